from __future__ import annotations

import pytest
from pydantic import ValidationError

from code_crafter.errors import MissingParameters
from code_crafter.models import (
    ChallengeParameters,
    ConversationMessage,
    Difficulty,
    DisplayType,
    GeneratedQuestion,
    GradingResult,
    QuestionTypePreference,
    SingleQuestionV1,
    TopicExplanation,
)


def make_question_payload(**overrides: object) -> dict:
    payload = {
        "coding_question": "Implement a counter using a closure.",
        "coding_hints": ["Use an inner function."],
        "conceptual_question": "What is a closure?",
        "conceptual_hints": ["Think about lexical scope."],
        "question_type_generated": "both",
    }
    payload.update(overrides)
    return payload


def test_challenge_parameters_from_query_accepts_short_type_key() -> None:
    params = ChallengeParameters.from_query(
        {"topic": " JavaScript Closures ", "difficulty": "Beginner", "type": "coding"}
    )
    assert params.topic == "JavaScript Closures"
    assert params.difficulty == Difficulty.BEGINNER
    assert params.question_type_preference == QuestionTypePreference.CODING


@pytest.mark.parametrize(
    "values",
    [
        None,
        {},
        {"topic": "Closures", "difficulty": "Beginner"},
        {"topic": "   ", "difficulty": "Beginner", "type": "coding"},
        {"topic": "Closures", "difficulty": "Impossible", "type": "coding"},
    ],
)
def test_challenge_parameters_from_query_rejects_missing_or_invalid(values: dict | None) -> None:
    with pytest.raises(MissingParameters):
        ChallengeParameters.from_query(values)


def test_generated_question_both_requires_both_questions() -> None:
    with pytest.raises(ValidationError):
        GeneratedQuestion.model_validate(make_question_payload(conceptual_question=None))


def test_generated_question_coding_must_not_carry_conceptual_fields() -> None:
    with pytest.raises(ValidationError):
        GeneratedQuestion.model_validate(make_question_payload(question_type_generated="coding"))


def test_generated_question_conceptual_defaults_to_conceptual_display() -> None:
    question = GeneratedQuestion.model_validate(
        {
            "conceptual_question": "What is a closure?",
            "conceptual_hints": ["Scope."],
            "question_type_generated": "conceptual",
        }
    )
    assert question.default_display_type() == DisplayType.CONCEPTUAL
    assert not question.offers(DisplayType.CODING)
    assert question.hints_for(DisplayType.CODING) == []


def test_generated_question_both_defaults_to_coding_display() -> None:
    question = GeneratedQuestion.model_validate(make_question_payload())
    assert question.default_display_type() == DisplayType.CODING
    assert question.question_for(DisplayType.CONCEPTUAL) == "What is a closure?"


def test_single_question_rejects_more_than_three_hints() -> None:
    with pytest.raises(ValidationError):
        SingleQuestionV1.model_validate({"question": "Q", "hints": ["a", "b", "c", "d"]})


def test_single_question_rejects_blank_hint() -> None:
    with pytest.raises(ValidationError):
        SingleQuestionV1.model_validate({"question": "Q", "hints": ["a", "  "]})


@pytest.mark.parametrize("score,passed", [(0, False), (59, False), (60, True), (100, True)])
def test_grading_result_accepts_consistent_pass_flag(score: int, passed: bool) -> None:
    result = GradingResult.model_validate({"score": score, "feedback": "ok", "passed": passed})
    assert result.passed is passed


@pytest.mark.parametrize("score,passed", [(59, True), (60, False), (95, False)])
def test_grading_result_rejects_inconsistent_pass_flag(score: int, passed: bool) -> None:
    with pytest.raises(ValidationError):
        GradingResult.model_validate({"score": score, "feedback": "ok", "passed": passed})


@pytest.mark.parametrize("score", [-1, 101])
def test_grading_result_score_must_be_in_range(score: int) -> None:
    with pytest.raises(ValidationError):
        GradingResult.model_validate({"score": score, "feedback": "ok", "passed": False})


def test_grading_result_rejects_unknown_keys() -> None:
    with pytest.raises(ValidationError):
        GradingResult.model_validate(
            {"score": 70, "feedback": "ok", "passed": True, "confidence": 0.9}
        )


def test_topic_explanation_caps_key_concepts() -> None:
    with pytest.raises(ValidationError):
        TopicExplanation.model_validate(
            {"explanation": "e", "key_concepts": ["a", "b", "c", "d", "e"]}
        )


def test_conversation_message_from_text() -> None:
    message = ConversationMessage.from_text("user", "Hello")
    assert message.model_dump(mode="json") == {"role": "user", "parts": [{"text": "Hello"}]}
    assert message.text == "Hello"


def test_user_authored_text_is_not_stripped() -> None:
    message = ConversationMessage.model_validate(
        {"role": "user", "parts": [{"text": "  for x in xs:\n      print(x)\n"}]}
    )
    params = ChallengeParameters.from_query(
        {"topic": "  Loops ", "difficulty": "Beginner", "question_type_preference": "coding"}
    )

    assert message.text == "  for x in xs:\n      print(x)\n"
    assert params.topic == "Loops"
