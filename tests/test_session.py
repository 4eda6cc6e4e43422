from __future__ import annotations

import asyncio
from typing import Any

import pytest

from code_crafter.achievements import AchievementEvaluator
from code_crafter.errors import (
    EmptySubmission,
    InvalidTransition,
    MissingParameters,
    PermissionDenied,
)
from code_crafter.gateway import AIGateway
from code_crafter.llm_client import LLMClientError
from code_crafter.models import AttemptRecord, DisplayType
from code_crafter.session import (
    ChallengeSession,
    Graded,
    Idle,
    Phase,
    QuestionReady,
    SolutionFailed,
    SolutionReady,
)
from code_crafter.store import AchievementRepository, HistoryRepository

from conftest import StubLLMClient, default_outputs, question_output, repo_root


CLOSURES_CODING = {
    "topic": "JavaScript Closures",
    "difficulty": "Beginner",
    "question_type_preference": "coding",
}


class GatedGateway:
    """Delegates to a real gateway, holding one named call until released."""

    def __init__(self, inner: AIGateway, gated: str) -> None:
        self.inner = inner
        self.gated = gated
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def _hold(self, name: str) -> None:
        if name == self.gated:
            self.entered.set()
            await self.release.wait()

    async def generate_question(self, request: Any):
        await self._hold("generate_question")
        return await self.inner.generate_question(request)

    async def grade_code(self, request: Any):
        await self._hold("grade_code")
        return await self.inner.grade_code(request)

    async def grade_answer(self, request: Any):
        await self._hold("grade_answer")
        return await self.inner.grade_answer(request)

    async def generate_solution(self, request: Any):
        await self._hold("generate_solution")
        return await self.inner.generate_solution(request)


class DeniedHistory:
    def __init__(self) -> None:
        self.records: list[AttemptRecord] = []

    async def append(self, record: AttemptRecord):
        self.records.append(record)
        raise PermissionDenied("Missing or insufficient permissions.")


class HeldHistory:
    """Delegates to a real repository, holding `append` open until released."""

    def __init__(self, inner: HistoryRepository) -> None:
        self.inner = inner
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.appended = 0

    async def append(self, record: AttemptRecord):
        self.entered.set()
        await self.release.wait()
        self.appended += 1
        return await self.inner.append(record)


def make_gateway(outputs: dict[str, Any]) -> tuple[AIGateway, StubLLMClient]:
    stub = StubLLMClient(outputs)
    return AIGateway(llm_client=stub, prompts_dir=repo_root() / "prompts"), stub


def make_session(
    gateway: Any,
    history_repo: Any,
    achievement_repo: AchievementRepository | None = None,
    *,
    user_id: str | None = "user-1",
) -> ChallengeSession:
    evaluator = None
    if achievement_repo is not None:
        evaluator = AchievementEvaluator(history=history_repo, achievements=achievement_repo)
    return ChallengeSession(
        gateway=gateway, history=history_repo, evaluator=evaluator, user_id=user_id
    )


@pytest.mark.asyncio
async def test_failed_attempt_fetches_solution_and_persists_it(
    history_repo: HistoryRepository, achievement_repo: AchievementRepository
) -> None:
    gateway, stub = make_gateway(default_outputs(score=45))
    session = make_session(gateway, history_repo, achievement_repo)

    await session.fetch_question(CLOSURES_CODING)
    assert session.question is not None
    assert session.question.question_type_generated.value == "coding"
    assert session.current_hints

    await session.submit("function x(){}")

    assert isinstance(session.state, SolutionReady)
    assert session.state.result.passed is False
    assert session.transitions == [
        Phase.IDLE,
        Phase.QUESTION_LOADING,
        Phase.QUESTION_READY,
        Phase.SUBMITTING,
        Phase.GRADED,
        Phase.SOLUTION_LOADING,
        Phase.SOLUTION_READY,
    ]
    assert stub.operations() == ["single_question", "grade_code", "generate_solution"]

    entries = await history_repo.query("user-1")
    assert len(entries) == 1
    assert entries[0].user_solution == "function x(){}"
    assert entries[0].generated_solution is not None
    assert await achievement_repo.list_for_user("user-1") == []
    assert session.awarded == []


@pytest.mark.asyncio
async def test_passed_attempt_skips_solution_and_awards_first_badge(
    history_repo: HistoryRepository, achievement_repo: AchievementRepository
) -> None:
    gateway, stub = make_gateway(default_outputs(score=80))
    session = make_session(gateway, history_repo, achievement_repo)

    await session.fetch_question(CLOSURES_CODING)
    await session.submit("function x(){}")

    assert isinstance(session.state, Graded)
    assert "generate_solution" not in stub.operations()

    entries = await history_repo.query("user-1")
    assert len(entries) == 1
    assert entries[0].generated_solution is None
    assert session.last_entry is not None and session.last_entry.id == entries[0].id
    assert [badge.achievement_id for badge in session.awarded] == ["initiate_programmer"]
    titles = [notice.title for notice in session.notices]
    assert titles[-2:] == ["Challenge Saved!", "Badge Unlocked!"]
    assert session.notices[-1].message == "You've earned: Initiate Programmer"


@pytest.mark.asyncio
async def test_empty_submission_makes_no_grading_call(history_repo: HistoryRepository) -> None:
    gateway, stub = make_gateway(default_outputs())
    session = make_session(gateway, history_repo)
    await session.fetch_question(CLOSURES_CODING)
    before = session.state

    with pytest.raises(EmptySubmission):
        await session.submit("   \n\t")

    assert session.state is before
    assert stub.operations() == ["single_question"]
    assert session.notices[-1].message == "Cannot submit: Code is empty."


@pytest.mark.asyncio
async def test_submit_uses_draft_when_no_text_given(history_repo: HistoryRepository) -> None:
    gateway, stub = make_gateway(default_outputs())
    session = make_session(gateway, history_repo)
    await session.fetch_question(CLOSURES_CODING)

    session.edit_answer("const f = () => 1;")
    await session.submit()

    assert stub.calls[-1]["metadata"]["operation"] == "grade_code"
    assert stub.calls[-1]["payload"]["code"] == "const f = () => 1;"


@pytest.mark.asyncio
async def test_missing_parameters_make_no_call(history_repo: HistoryRepository) -> None:
    gateway, stub = make_gateway(default_outputs())
    session = make_session(gateway, history_repo)

    with pytest.raises(MissingParameters):
        await session.fetch_question({"topic": "Closures", "difficulty": "Beginner"})
    with pytest.raises(MissingParameters):
        await session.fetch_question(None)

    assert stub.calls == []
    assert session.transitions == [Phase.IDLE]


@pytest.mark.asyncio
async def test_both_question_switches_to_conceptual_grader(
    history_repo: HistoryRepository,
) -> None:
    gateway, stub = make_gateway(default_outputs())
    session = make_session(gateway, history_repo)

    await session.fetch_question({**CLOSURES_CODING, "question_type_preference": "both"})
    assert session.display_type == DisplayType.CODING
    assert session.notices[-1].title == "Challenges Ready!"

    session.edit_answer("draft that will be discarded")
    session.switch_display_type("conceptual")
    assert isinstance(session.state, QuestionReady)
    assert session.state.draft == ""

    await session.submit("A closure captures its defining scope.")

    grade_call = stub.calls[-1]
    assert grade_call["metadata"]["operation"] == "grade_answer"
    assert grade_call["payload"]["question"] == session.question.conceptual_question
    entries = await history_repo.query("user-1")
    assert entries[0].question_type == DisplayType.CONCEPTUAL


@pytest.mark.asyncio
async def test_switch_requires_both_question(history_repo: HistoryRepository) -> None:
    gateway, _ = make_gateway(default_outputs())
    session = make_session(gateway, history_repo)
    await session.fetch_question(CLOSURES_CODING)

    with pytest.raises(InvalidTransition):
        session.switch_display_type("conceptual")


@pytest.mark.asyncio
async def test_solution_failure_still_persists_one_entry(history_repo: HistoryRepository) -> None:
    outputs = default_outputs(score=30)
    outputs["generate_solution"] = LLMClientError("Gemini HTTP 500: internal", status_code=500)
    gateway, _ = make_gateway(outputs)
    session = make_session(gateway, history_repo)

    await session.fetch_question(CLOSURES_CODING)
    await session.submit("function x(){}")

    assert isinstance(session.state, SolutionFailed)
    entries = await history_repo.query("user-1")
    assert len(entries) == 1
    assert entries[0].generated_solution is None
    assert "Solution Error" in [notice.title for notice in session.notices]


@pytest.mark.asyncio
async def test_grading_failure_returns_to_question_with_error(
    history_repo: HistoryRepository,
) -> None:
    outputs = default_outputs()
    outputs["grade_code"] = LLMClientError("Gemini HTTP 503: overloaded", status_code=503)
    gateway, _ = make_gateway(outputs)
    session = make_session(gateway, history_repo)

    await session.fetch_question(CLOSURES_CODING)
    await session.submit("function x(){}")

    assert isinstance(session.state, QuestionReady)
    assert session.state.draft == "function x(){}"
    assert "overloaded" in session.state.error
    assert await history_repo.query("user-1") == []


@pytest.mark.asyncio
async def test_question_failure_returns_to_idle(history_repo: HistoryRepository) -> None:
    outputs = default_outputs()
    outputs["single_question:coding"] = "not json at all"
    gateway, _ = make_gateway(outputs)
    session = make_session(gateway, history_repo)

    await session.fetch_question(CLOSURES_CODING)

    assert isinstance(session.state, Idle)
    assert session.state.error == (
        'Failed to generate question(s) for "JavaScript Closures". '
        "Please try again or choose different parameters."
    )
    assert session.notices[-1].title == "Question Generation Error"


@pytest.mark.asyncio
async def test_anonymous_session_is_not_persisted(history_repo: HistoryRepository) -> None:
    gateway, _ = make_gateway(default_outputs())
    session = make_session(gateway, history_repo, user_id=None)

    await session.fetch_question(CLOSURES_CODING)
    await session.submit("function x(){}")

    assert isinstance(session.state, Graded)
    assert session.notices[-1].title == "History Not Saved"
    assert session.last_entry is None


@pytest.mark.asyncio
async def test_store_denial_is_surfaced_without_undoing_grade() -> None:
    gateway, _ = make_gateway(default_outputs(score=90))
    history = DeniedHistory()
    session = make_session(gateway, history)

    await session.fetch_question(CLOSURES_CODING)
    await session.submit("function x(){}")

    assert isinstance(session.state, Graded)
    assert len(history.records) == 1
    assert session.persistence_error == PermissionDenied.default_user_message
    assert session.notices[-1].title == "History Save Error"


@pytest.mark.asyncio
async def test_leave_during_question_fetch_drops_response(
    history_repo: HistoryRepository,
) -> None:
    inner, _ = make_gateway(default_outputs())
    gateway = GatedGateway(inner, "generate_question")
    session = make_session(gateway, history_repo)

    task = asyncio.create_task(session.fetch_question(CLOSURES_CODING))
    await gateway.entered.wait()
    with pytest.raises(InvalidTransition):
        await session.fetch_question(CLOSURES_CODING)

    session.leave()
    gateway.release.set()
    await task

    assert isinstance(session.state, Idle)
    assert session.question is None
    assert session.notices == []


@pytest.mark.asyncio
async def test_leave_during_grading_persists_nothing(history_repo: HistoryRepository) -> None:
    inner, _ = make_gateway(default_outputs(score=90))
    gateway = GatedGateway(inner, "grade_code")
    session = make_session(gateway, history_repo)
    await session.fetch_question(CLOSURES_CODING)

    task = asyncio.create_task(session.submit("function x(){}"))
    await gateway.entered.wait()
    assert session.is_busy

    session.leave()
    gateway.release.set()
    await task

    assert isinstance(session.state, Idle)
    assert await history_repo.query("user-1") == []


@pytest.mark.asyncio
async def test_editing_after_grade_starts_new_attempt(history_repo: HistoryRepository) -> None:
    gateway, _ = make_gateway(default_outputs(score=90))
    session = make_session(gateway, history_repo)
    await session.fetch_question(CLOSURES_CODING)
    await session.submit("function x(){}")

    session.edit_answer("function y(){}")

    assert isinstance(session.state, QuestionReady)
    assert session.state.draft == "function y(){}"


@pytest.mark.asyncio
async def test_restart_fetches_with_same_parameters(history_repo: HistoryRepository) -> None:
    gateway, stub = make_gateway(default_outputs())
    session = make_session(gateway, history_repo)
    await session.fetch_question(CLOSURES_CODING)

    await session.restart()

    assert stub.operations() == ["single_question", "single_question"]
    assert stub.calls[1]["payload"]["topic"] == "JavaScript Closures"
    assert isinstance(session.state, QuestionReady)


@pytest.mark.asyncio
async def test_transport_reset_leaves_session_retryable(history_repo: HistoryRepository) -> None:
    outputs = default_outputs()
    outputs["single_question:coding"] = ConnectionResetError("connection reset by peer")
    gateway, stub = make_gateway(outputs)
    session = make_session(gateway, history_repo)

    await session.fetch_question(CLOSURES_CODING)

    assert isinstance(session.state, Idle)
    assert session.state.error
    assert not session.is_busy

    stub.outputs["single_question:coding"] = question_output("coding")
    await session.fetch_question(CLOSURES_CODING)

    assert isinstance(session.state, QuestionReady)


@pytest.mark.asyncio
async def test_grading_transport_error_returns_to_question(
    history_repo: HistoryRepository,
) -> None:
    outputs = default_outputs()
    outputs["grade_code"] = ConnectionResetError("connection reset by peer")
    gateway, _ = make_gateway(outputs)
    session = make_session(gateway, history_repo)
    await session.fetch_question(CLOSURES_CODING)

    await session.submit("function x(){}")

    assert isinstance(session.state, QuestionReady)
    assert session.state.error == "Failed to grade your coding challenge. Please try again."
    assert not session.is_busy


@pytest.mark.asyncio
async def test_session_stays_busy_until_attempt_is_saved(
    history_repo: HistoryRepository,
) -> None:
    gateway, stub = make_gateway(default_outputs(score=90))
    history = HeldHistory(history_repo)
    session = make_session(gateway, history)
    await session.fetch_question(CLOSURES_CODING)

    task = asyncio.create_task(session.submit("function x(){}"))
    await history.entered.wait()

    assert isinstance(session.state, Graded)
    assert session.is_busy
    with pytest.raises(InvalidTransition):
        await session.submit("function y(){}")
    with pytest.raises(InvalidTransition):
        session.edit_answer("function y(){}")
    with pytest.raises(InvalidTransition):
        await session.fetch_question(CLOSURES_CODING)

    history.release.set()
    await task

    assert not session.is_busy
    assert history.appended == 1
    assert stub.operations() == ["single_question", "grade_code"]
    assert session.last_entry is not None
    assert session.last_entry.user_solution == "function x(){}"


@pytest.mark.asyncio
async def test_leave_while_saving_frees_session(history_repo: HistoryRepository) -> None:
    gateway, _ = make_gateway(default_outputs(score=90))
    history = HeldHistory(history_repo)
    session = make_session(gateway, history)
    await session.fetch_question(CLOSURES_CODING)

    task = asyncio.create_task(session.submit("function x(){}"))
    await history.entered.wait()
    session.leave()

    assert not session.is_busy
    await session.fetch_question(CLOSURES_CODING)
    assert isinstance(session.state, QuestionReady)

    history.release.set()
    await task

    assert isinstance(session.state, QuestionReady)
    assert session.last_entry is None
    assert len(await history_repo.query("user-1")) == 1


@pytest.mark.asyncio
async def test_submitted_code_keeps_its_whitespace(history_repo: HistoryRepository) -> None:
    gateway, stub = make_gateway(default_outputs(score=90))
    session = make_session(gateway, history_repo)
    await session.fetch_question(CLOSURES_CODING)
    code = "def outer():\n    x = 1\n    return lambda: x\n"

    await session.submit(code)

    assert stub.calls[-1]["payload"]["code"] == code
    entries = await history_repo.query("user-1")
    assert entries[0].user_solution == code
