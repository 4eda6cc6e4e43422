"""Executable data contracts for Code Crafter.

Prompts ask the model for a particular JSON shape; these models decide
whether the answer is accepted. Anything that fails validation is rejected
before it reaches the session or the history store.

Design principles used here:
- `extra="forbid"`: unknown keys are not allowed.
- Narrow enums/ranges: only permitted values pass.
- Cross-field validators: enforce rules that types alone cannot, such as
  "a coding question was generated, so the coding text must be present"
  and "passed means score >= 60".

Versioning note:
- The `V1` models are the AI output contracts exported by
  `scripts/export_schemas.py`. Incompatible changes get new models.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    model_validator,
)

from .errors import MissingParameters


PASSING_SCORE = 60

# Code, answers and transcript text are kept exactly as typed, indentation included.
UserText = Annotated[str, StringConstraints(strip_whitespace=False)]
# As UserText, but must contain something other than whitespace.
SubmittedText = Annotated[
    str, StringConstraints(strip_whitespace=False, min_length=1, pattern=r"\S")
]


class StrictModel(BaseModel):
    """Shared strict behavior for all contracts."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class Difficulty(str, Enum):
    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    ADVANCED = "Advanced"


class InterviewDifficulty(str, Enum):
    """Interview levels. Interviews offer one level above the challenge range."""

    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    ADVANCED = "Advanced"
    EXPERT = "Expert"


class QuestionTypePreference(str, Enum):
    CODING = "coding"
    CONCEPTUAL = "conceptual"
    BOTH = "both"


class DisplayType(str, Enum):
    """Which half of a question is on screen (and which grader applies)."""

    CODING = "coding"
    CONCEPTUAL = "conceptual"


# ---------------------------------------------------------------------
# Challenge parameters
# ---------------------------------------------------------------------


class ChallengeParameters(StrictModel):
    """Inputs fixed for the lifetime of one challenge session."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, frozen=True)

    topic: str = Field(min_length=1)
    difficulty: Difficulty
    question_type_preference: QuestionTypePreference

    @classmethod
    def from_query(cls, values: Mapping[str, Any] | None) -> ChallengeParameters:
        """Build parameters from loosely typed input such as a query string.

        Accepts both `question_type_preference` and the short `type` key.
        Raises MissingParameters when any field is absent, blank or unknown.
        """
        values = values or {}
        preference = values.get("question_type_preference", values.get("type"))
        raw = {
            "topic": values.get("topic"),
            "difficulty": values.get("difficulty"),
            "question_type_preference": preference,
        }
        missing = [key for key, value in raw.items() if value is None or str(value).strip() == ""]
        if missing:
            raise MissingParameters(f"missing challenge parameters: {', '.join(missing)}")
        try:
            return cls.model_validate(raw)
        except ValidationError as err:
            raise MissingParameters(f"invalid challenge parameters: {err}") from err


# ---------------------------------------------------------------------
# AI output contracts
# ---------------------------------------------------------------------


class SingleQuestionV1(StrictModel):
    """One generated question with 1..3 hints, least to most revealing."""

    question: str = Field(min_length=1)
    hints: list[str] = Field(min_length=1, max_length=3)

    @model_validator(mode="after")
    def validate_hints_not_blank(self) -> SingleQuestionV1:
        if any(not hint.strip() for hint in self.hints):
            raise ValueError("hints must not be blank")
        return self


class GeneratedQuestion(StrictModel):
    """A coding question, a conceptual question, or both.

    The fields present must match `question_type_generated`: a generated
    type must have its question text, a type that was not generated must not.
    """

    coding_question: str | None = Field(default=None, min_length=1)
    coding_hints: list[str] | None = Field(default=None, min_length=1, max_length=3)
    conceptual_question: str | None = Field(default=None, min_length=1)
    conceptual_hints: list[str] | None = Field(default=None, min_length=1, max_length=3)
    question_type_generated: QuestionTypePreference

    @model_validator(mode="after")
    def validate_generated_fields(self) -> GeneratedQuestion:
        generated = self.question_type_generated
        wants_coding = generated in (QuestionTypePreference.CODING, QuestionTypePreference.BOTH)
        wants_conceptual = generated in (
            QuestionTypePreference.CONCEPTUAL,
            QuestionTypePreference.BOTH,
        )

        if wants_coding and self.coding_question is None:
            raise ValueError(f"coding_question is required when {generated.value} was generated")
        if wants_conceptual and self.conceptual_question is None:
            raise ValueError(
                f"conceptual_question is required when {generated.value} was generated"
            )
        if not wants_coding and (self.coding_question is not None or self.coding_hints):
            raise ValueError("coding fields must be absent for conceptual questions")
        if not wants_conceptual and (
            self.conceptual_question is not None or self.conceptual_hints
        ):
            raise ValueError("conceptual fields must be absent for coding questions")
        return self

    def default_display_type(self) -> DisplayType:
        if self.question_type_generated == QuestionTypePreference.CONCEPTUAL:
            return DisplayType.CONCEPTUAL
        return DisplayType.CODING

    def offers(self, display_type: DisplayType) -> bool:
        return self.question_for(display_type) is not None

    def question_for(self, display_type: DisplayType) -> str | None:
        if display_type == DisplayType.CODING:
            return self.coding_question
        return self.conceptual_question

    def hints_for(self, display_type: DisplayType) -> list[str]:
        if display_type == DisplayType.CODING:
            return list(self.coding_hints or [])
        return list(self.conceptual_hints or [])


class GradingResult(StrictModel):
    """Grade for one submitted code snippet or conceptual answer.

    `passed` must agree with the score: true exactly when score >= 60. The
    grading prompts state the same policy; a response that breaks it is
    rejected instead of trusted.
    """

    score: int = Field(ge=0, le=100)
    feedback: str = Field(min_length=1)
    passed: bool

    @model_validator(mode="after")
    def validate_pass_policy(self) -> GradingResult:
        expected = self.score >= PASSING_SCORE
        if self.passed != expected:
            raise ValueError(
                f"passed={self.passed} is inconsistent with score={self.score} "
                f"(passing score is {PASSING_SCORE})"
            )
        return self


class GeneratedSolution(StrictModel):
    solution: str = Field(min_length=1)
    explanation: str = Field(min_length=1)


class TopicSuggestion(StrictModel):
    topic: str = Field(min_length=1)


class CodeExample(StrictModel):
    language: str = Field(min_length=1)
    code: str = Field(min_length=1)
    title: str | None = None


class TopicExplanation(StrictModel):
    explanation: str = Field(min_length=1)
    code_examples: list[CodeExample] | None = None
    diagram_description: str | None = None
    key_concepts: list[str] | None = Field(default=None, max_length=4)


class Role(str, Enum):
    USER = "user"
    MODEL = "model"


class MessagePart(StrictModel):
    text: UserText


class ConversationMessage(StrictModel):
    """One interview transcript message."""

    role: Role
    parts: list[MessagePart] = Field(min_length=1)

    @classmethod
    def from_text(cls, role: Role | str, text: str) -> ConversationMessage:
        return cls(role=role, parts=[MessagePart(text=text)])

    @property
    def text(self) -> str:
        return "\n".join(part.text for part in self.parts)


class InterviewTurnV1(StrictModel):
    ai_response_text: str = Field(min_length=1)


# ---------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------


class AttemptRecord(StrictModel):
    """A graded attempt, ready to be appended to history."""

    user_id: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    difficulty: Difficulty
    question_type: DisplayType
    question: str = Field(min_length=1)
    user_solution: UserText
    grading_result: GradingResult
    generated_solution: GeneratedSolution | None = None

    @property
    def passed(self) -> bool:
        return self.grading_result.passed


class ChallengeHistoryEntry(AttemptRecord):
    """An attempt as stored: id and created_at are assigned by the store."""

    id: int
    created_at: datetime


class HistoryFilters(StrictModel):
    """History query filters. A None field matches everything."""

    topic: str | None = None
    difficulty: Difficulty | None = None
    passed: bool | None = None
    question_type: DisplayType | None = None


class Achievement(StrictModel):
    """A catalog badge. `icon_name` is a presentation identifier only."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    icon_name: str = Field(min_length=1)
    criteria_count: int | None = Field(default=None, ge=1)
    criteria_difficulty: Difficulty | None = None


class UserAchievement(StrictModel):
    id: int
    user_id: str
    achievement_id: str
    name: str
    description: str
    icon_name: str
    earned_at: datetime
