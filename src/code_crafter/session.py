"""
Challenge session state machine.

One `ChallengeSession` drives one practice session for one user:

    Idle -> QuestionLoading -> QuestionReady -> Submitting -> Graded
                                                   Graded(failed) -> SolutionLoading
                                                   SolutionLoading -> SolutionReady | SolutionFailed

Each state is its own frozen dataclass carrying exactly the data that is
valid in it, so "solution loading without a grade" cannot be represented.

After every successful grade the attempt is appended to history once, pass
or fail. A passing attempt that was saved is then handed to the achievement
evaluator. Store failures at that point are reported as notices and never
undo the grade.

`leave()` and `restart()` advance an epoch counter. A gateway response that
arrives for an older epoch is dropped instead of being applied.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Literal, Protocol, Union
from uuid import uuid4

from .errors import (
    CodeCrafterError,
    EmptySubmission,
    InvalidTransition,
    MissingParameters,
    PermissionDenied,
    StoreUnavailable,
    UpstreamUnavailable,
)
from .gateway import GradeAnswerRequest, GradeCodeRequest, QuestionRequest, SolutionRequest
from .models import (
    AttemptRecord,
    ChallengeHistoryEntry,
    ChallengeParameters,
    DisplayType,
    GeneratedQuestion,
    GeneratedSolution,
    GradingResult,
    QuestionTypePreference,
    UserAchievement,
)


class Phase(str, Enum):
    IDLE = "idle"
    QUESTION_LOADING = "question_loading"
    QUESTION_READY = "question_ready"
    SUBMITTING = "submitting"
    GRADED = "graded"
    SOLUTION_LOADING = "solution_loading"
    SOLUTION_READY = "solution_ready"
    SOLUTION_FAILED = "solution_failed"


BUSY_PHASES = frozenset({Phase.QUESTION_LOADING, Phase.SUBMITTING, Phase.SOLUTION_LOADING})
RESULT_PHASES = frozenset({Phase.GRADED, Phase.SOLUTION_READY, Phase.SOLUTION_FAILED})


# ---------------------------------------------------------------------
# States
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class Idle:
    error: str | None = None

    phase: ClassVar[Phase] = Phase.IDLE


@dataclass(frozen=True)
class QuestionLoading:
    params: ChallengeParameters

    phase: ClassVar[Phase] = Phase.QUESTION_LOADING


@dataclass(frozen=True)
class QuestionReady:
    question: GeneratedQuestion
    display_type: DisplayType
    draft: str = ""
    error: str | None = None

    phase: ClassVar[Phase] = Phase.QUESTION_READY


@dataclass(frozen=True)
class Submitting:
    question: GeneratedQuestion
    display_type: DisplayType
    solution_text: str

    phase: ClassVar[Phase] = Phase.SUBMITTING


@dataclass(frozen=True)
class Graded:
    question: GeneratedQuestion
    display_type: DisplayType
    solution_text: str
    result: GradingResult

    phase: ClassVar[Phase] = Phase.GRADED


@dataclass(frozen=True)
class SolutionLoading:
    question: GeneratedQuestion
    display_type: DisplayType
    solution_text: str
    result: GradingResult

    phase: ClassVar[Phase] = Phase.SOLUTION_LOADING


@dataclass(frozen=True)
class SolutionReady:
    question: GeneratedQuestion
    display_type: DisplayType
    solution_text: str
    result: GradingResult
    solution: GeneratedSolution

    phase: ClassVar[Phase] = Phase.SOLUTION_READY


@dataclass(frozen=True)
class SolutionFailed:
    question: GeneratedQuestion
    display_type: DisplayType
    solution_text: str
    result: GradingResult
    error: str

    phase: ClassVar[Phase] = Phase.SOLUTION_FAILED


SessionState = Union[
    Idle,
    QuestionLoading,
    QuestionReady,
    Submitting,
    Graded,
    SolutionLoading,
    SolutionReady,
    SolutionFailed,
]

# States from which an answer can be edited or submitted.
ANSWERABLE_STATES = (QuestionReady, Graded, SolutionReady, SolutionFailed)


NoticeLevel = Literal["info", "success", "warning", "error"]


@dataclass(frozen=True)
class Notice:
    """A user-visible message, in the order it was raised."""

    level: NoticeLevel
    title: str
    message: str


# ---------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------


class ChallengeGateway(Protocol):
    async def generate_question(self, request: QuestionRequest) -> GeneratedQuestion: ...

    async def grade_code(self, request: GradeCodeRequest) -> GradingResult: ...

    async def grade_answer(self, request: GradeAnswerRequest) -> GradingResult: ...

    async def generate_solution(self, request: SolutionRequest) -> GeneratedSolution: ...


class HistoryWriter(Protocol):
    async def append(self, record: AttemptRecord) -> ChallengeHistoryEntry: ...


class BadgeEvaluator(Protocol):
    async def evaluate(
        self, user_id: str, new_entry: ChallengeHistoryEntry
    ) -> list[UserAchievement]: ...


# ---------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------


class ChallengeSession:
    """Sequences question fetch, grading, solution fetch, persistence and badges."""

    def __init__(
        self,
        *,
        gateway: ChallengeGateway,
        history: HistoryWriter,
        evaluator: BadgeEvaluator | None = None,
        user_id: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.gateway = gateway
        self.history = history
        self.evaluator = evaluator
        self.user_id = user_id
        self.logger = logger or logging.getLogger("code_crafter.session")

        self.session_id = uuid4().hex
        self.params: ChallengeParameters | None = None
        self.state: SessionState = Idle()
        self.transitions: list[Phase] = [Phase.IDLE]
        self.notices: list[Notice] = []
        self.persistence_error: str | None = None
        self.last_entry: ChallengeHistoryEntry | None = None
        self.awarded: list[UserAchievement] = []

        self._epoch = 0
        # Epoch of the attempt whose history write and badge check are still running.
        self._persisting_epoch: int | None = None

    # -------------------------
    # Views
    # -------------------------

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def is_busy(self) -> bool:
        return self.phase in BUSY_PHASES or self._persisting_epoch == self._epoch

    @property
    def question(self) -> GeneratedQuestion | None:
        return getattr(self.state, "question", None)

    @property
    def display_type(self) -> DisplayType | None:
        return getattr(self.state, "display_type", None)

    @property
    def current_question_text(self) -> str | None:
        question, display_type = self.question, self.display_type
        if question is None or display_type is None:
            return None
        return question.question_for(display_type)

    @property
    def current_hints(self) -> list[str]:
        question, display_type = self.question, self.display_type
        if question is None or display_type is None:
            return []
        return question.hints_for(display_type)

    def drain_notices(self) -> list[Notice]:
        """Return the notices raised so far and forget them."""
        notices, self.notices = self.notices, []
        return notices

    # -------------------------
    # Transitions
    # -------------------------

    async def fetch_question(
        self, params: ChallengeParameters | Mapping[str, Any] | None
    ) -> SessionState:
        """Generate a fresh question for `params`.

        Raises MissingParameters, without a transition or a gateway call,
        when any parameter is absent.
        """
        if params is None:
            raise MissingParameters("no challenge parameters given")
        if not isinstance(params, ChallengeParameters):
            params = ChallengeParameters.from_query(params)
        self._ensure_not_busy("fetch a question")

        self.params = params
        epoch = self._next_epoch()
        self._clear_attempt_outcome()
        self._set(QuestionLoading(params=params))

        try:
            question = await self.gateway.generate_question(
                QuestionRequest(
                    topic=params.topic,
                    difficulty=params.difficulty,
                    preferred_question_type=params.question_type_preference,
                )
            )
        except CodeCrafterError as err:
            if self._is_stale(epoch, "question_failed"):
                return self.state
            message = _question_error_message(err, params)
            self._set(Idle(error=message))
            self._notify("error", "Question Generation Error", message)
            return self.state

        if self._is_stale(epoch, "question_ready"):
            return self.state

        self._set(QuestionReady(question=question, display_type=question.default_display_type()))
        self._notify("success", *_question_ready_notice(question, params))
        return self.state

    async def restart(self) -> SessionState:
        """Fetch a new question with the same parameters."""
        if self.params is None:
            raise MissingParameters("no challenge to restart")
        return await self.fetch_question(self.params)

    def switch_display_type(self, display_type: DisplayType | str) -> SessionState:
        """Show the other half of a `both` question.

        Drafts, grades and solutions are not kept per tab: switching resets
        all of them.
        """
        display_type = DisplayType(display_type)
        question = self.question
        if question is None or self.is_busy:
            raise InvalidTransition(action="switch question type", phase=self.phase.value)
        if question.question_type_generated != QuestionTypePreference.BOTH:
            raise InvalidTransition(
                action=f"switch to {display_type.value} for a "
                f"{question.question_type_generated.value}-only question",
                phase=self.phase.value,
            )

        self._clear_attempt_outcome()
        self._set(QuestionReady(question=question, display_type=display_type))
        return self.state

    def edit_answer(self, text: str) -> SessionState:
        """Replace the draft. Editing after a grade starts a new attempt."""
        state = self.state
        if not isinstance(state, ANSWERABLE_STATES):
            raise InvalidTransition(action="edit the answer", phase=self.phase.value)
        self._ensure_not_busy("edit the answer")

        if isinstance(state, QuestionReady):
            self.state = QuestionReady(
                question=state.question, display_type=state.display_type, draft=text
            )
        else:
            self._set(
                QuestionReady(question=state.question, display_type=state.display_type, draft=text)
            )
        return self.state

    async def submit(self, solution_text: str | None = None) -> SessionState:
        """Grade an answer for the displayed question.

        Uses the current draft when no text is given. Raises EmptySubmission
        for blank text; nothing changes and no grading call is made.
        """
        state = self.state
        if not isinstance(state, ANSWERABLE_STATES):
            raise InvalidTransition(action="submit", phase=self.phase.value)
        self._ensure_not_busy("submit")
        if self.params is None:
            raise MissingParameters("no challenge parameters for this session")

        if solution_text is None:
            solution_text = state.draft if isinstance(state, QuestionReady) else ""
        if not solution_text.strip():
            noun = "Code" if state.display_type == DisplayType.CODING else "Answer"
            self._notify("error", "Error", f"Cannot submit: {noun} is empty.")
            raise EmptySubmission(f"empty {state.display_type.value} submission")

        params = self.params
        question, display_type = state.question, state.display_type
        question_text = question.question_for(display_type)
        if question_text is None:
            raise InvalidTransition(
                action=f"submit a {display_type.value} answer", phase=self.phase.value
            )

        epoch = self._epoch
        self._clear_attempt_outcome()
        self._set(
            Submitting(question=question, display_type=display_type, solution_text=solution_text)
        )

        try:
            result = await self._grade(params, display_type, question_text, solution_text)
        except CodeCrafterError as err:
            if self._is_stale(epoch, "grading_failed"):
                return self.state
            message = _grading_error_message(err, display_type)
            self._set(
                QuestionReady(
                    question=question,
                    display_type=display_type,
                    draft=solution_text,
                    error=message,
                )
            )
            self._notify("error", "Grading Error", message)
            return self.state

        if self._is_stale(epoch, "graded"):
            return self.state

        graded = Graded(
            question=question,
            display_type=display_type,
            solution_text=solution_text,
            result=result,
        )
        self._set(graded)
        self._notify(
            "success" if result.passed else "info",
            "Grading Complete!",
            "Congratulations, you passed!" if result.passed else "Keep practicing!",
        )

        self._persisting_epoch = epoch
        try:
            solution: GeneratedSolution | None = None
            if not result.passed:
                solution = await self._fetch_solution(graded, params, question_text, epoch)

            await self._persist(
                params=params,
                display_type=display_type,
                question_text=question_text,
                solution_text=solution_text,
                result=result,
                solution=solution,
                epoch=epoch,
            )
        finally:
            if self._persisting_epoch == epoch:
                self._persisting_epoch = None
        return self.state

    def leave(self) -> SessionState:
        """Discard everything. Late responses for this session are ignored."""
        self._next_epoch()
        self.params = None
        self.notices = []
        self._clear_attempt_outcome()
        self._set(Idle())
        return self.state

    # -------------------------
    # Internals
    # -------------------------

    async def _grade(
        self,
        params: ChallengeParameters,
        display_type: DisplayType,
        question_text: str,
        solution_text: str,
    ) -> GradingResult:
        if display_type == DisplayType.CODING:
            return await self.gateway.grade_code(
                GradeCodeRequest(
                    code=solution_text,
                    topic=params.topic,
                    difficulty=params.difficulty,
                )
            )
        return await self.gateway.grade_answer(
            GradeAnswerRequest(
                question=question_text,
                user_answer=solution_text,
                topic=params.topic,
                difficulty=params.difficulty,
            )
        )

    async def _fetch_solution(
        self,
        graded: Graded,
        params: ChallengeParameters,
        question_text: str,
        epoch: int,
    ) -> GeneratedSolution | None:
        carried = dict(
            question=graded.question,
            display_type=graded.display_type,
            solution_text=graded.solution_text,
            result=graded.result,
        )
        self._set(SolutionLoading(**carried))
        try:
            solution = await self.gateway.generate_solution(
                SolutionRequest(
                    topic=params.topic,
                    difficulty=params.difficulty,
                    question=question_text,
                    question_type=graded.display_type,
                )
            )
        except CodeCrafterError as err:
            if self._is_stale(epoch, "solution_failed"):
                return None
            self.logger.warning(
                "solution_failed",
                extra={"session_id": self.session_id, "error_kind": type(err).__name__},
            )
            self._set(
                SolutionFailed(error="Failed to generate solution. Please try again.", **carried)
            )
            self._notify("error", "Solution Error", "Could not generate the solution.")
            return None

        if self._is_stale(epoch, "solution_ready"):
            return None
        self._set(SolutionReady(solution=solution, **carried))
        self._notify("success", "Solution Generated", "The solution is now available below.")
        return solution

    async def _persist(
        self,
        *,
        params: ChallengeParameters,
        display_type: DisplayType,
        question_text: str,
        solution_text: str,
        result: GradingResult,
        solution: GeneratedSolution | None,
        epoch: int,
    ) -> None:
        live = epoch == self._epoch
        if self.user_id is None:
            self.logger.info("history_skipped", extra={"session_id": self.session_id})
            if live:
                self._notify("warning", "History Not Saved", "Sign in to save your attempts.")
            return

        record = AttemptRecord(
            user_id=self.user_id,
            topic=params.topic,
            difficulty=params.difficulty,
            question_type=display_type,
            question=question_text,
            user_solution=solution_text,
            grading_result=result,
            generated_solution=solution,
        )
        try:
            entry = await self.history.append(record)
        except (PermissionDenied, StoreUnavailable) as err:
            self.logger.warning(
                "history_save_failed",
                extra={"session_id": self.session_id, "error_kind": type(err).__name__},
            )
            if live:
                self.persistence_error = err.user_message
                self._notify("error", "History Save Error", err.user_message)
            return

        if live:
            self.last_entry = entry
            self._notify(
                "success",
                "Challenge Saved!",
                "Your attempt has been successfully saved to your history.",
            )

        if not entry.passed or self.evaluator is None:
            return

        try:
            awarded = await self.evaluator.evaluate(self.user_id, entry)
        except (PermissionDenied, StoreUnavailable) as err:
            self.logger.warning(
                "achievement_check_failed",
                extra={"session_id": self.session_id, "error_kind": type(err).__name__},
            )
            if live:
                self._notify("error", "Achievement Error", err.user_message)
            return

        if not live:
            return
        for badge in awarded:
            self.awarded.append(badge)
            self._notify("success", "Badge Unlocked!", f"You've earned: {badge.name}")

    def _set(self, state: SessionState) -> None:
        previous = self.state.phase
        self.state = state
        self.transitions.append(state.phase)
        self.logger.info(
            "session_transition",
            extra={
                "session_id": self.session_id,
                "from_phase": previous.value,
                "to_phase": state.phase.value,
            },
        )

    def _notify(self, level: NoticeLevel, title: str, message: str) -> None:
        self.notices.append(Notice(level=level, title=title, message=message))

    def _ensure_not_busy(self, action: str) -> None:
        if self.is_busy:
            raise InvalidTransition(action=action, phase=self.phase.value)

    def _next_epoch(self) -> int:
        self._epoch += 1
        return self._epoch

    def _is_stale(self, epoch: int, event: str) -> bool:
        if epoch == self._epoch:
            return False
        self.logger.info(
            "session_response_dropped",
            extra={"session_id": self.session_id, "event": event},
        )
        return True

    def _clear_attempt_outcome(self) -> None:
        self.persistence_error = None
        self.last_entry = None
        self.awarded = []


def _question_error_message(err: CodeCrafterError, params: ChallengeParameters) -> str:
    if isinstance(err, UpstreamUnavailable):
        return err.user_message
    return (
        f'Failed to generate question(s) for "{params.topic}". '
        "Please try again or choose different parameters."
    )


def _grading_error_message(err: CodeCrafterError, display_type: DisplayType) -> str:
    if isinstance(err, UpstreamUnavailable):
        return err.user_message
    return f"Failed to grade your {display_type.value} challenge. Please try again."


def _question_ready_notice(
    question: GeneratedQuestion, params: ChallengeParameters
) -> tuple[str, str]:
    label = f"{params.topic} ({params.difficulty.value})"
    generated = question.question_type_generated
    if generated == QuestionTypePreference.BOTH:
        return "Challenges Ready!", f"Coding and conceptual questions for {label} generated."
    if generated == QuestionTypePreference.CODING:
        return "Coding Challenge Ready!", f"A coding question for {label} generated."
    return "Conceptual Question Ready!", f"A conceptual question for {label} generated."
