"""
AI invocation gateway: one uniform call contract for every AI operation.

This module wires together:
1) Request contracts, validated before anything is sent.
2) Prompt loading and composition (with caching + content hashing).
3) LLM invocation through a provider-agnostic client interface, run in a
   worker thread so the event loop stays free.
4) JSON extraction and strict Pydantic validation of the response.
5) Failure classification: UpstreamUnavailable, UpstreamError, SchemaViolation.

The gateway does not retry. Callers decide whether to offer a retry.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar, cast
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidRequest, SchemaViolation, UpstreamError, UpstreamUnavailable
from .llm_client import LLMClientError
from .models import (
    ConversationMessage,
    Difficulty,
    DisplayType,
    GeneratedQuestion,
    GeneratedSolution,
    GradingResult,
    InterviewDifficulty,
    InterviewTurnV1,
    QuestionTypePreference,
    SingleQuestionV1,
    SubmittedText,
    TopicExplanation,
    TopicSuggestion,
)


# ---------------------------------------------------------------------
# Request contracts
# ---------------------------------------------------------------------


class RequestModel(BaseModel):
    """Strict base class for gateway request payloads."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class QuestionRequest(RequestModel):
    """Inputs for a full question fetch (one or both question types)."""

    topic: str = Field(min_length=1)
    difficulty: Difficulty
    preferred_question_type: QuestionTypePreference


class SingleQuestionRequest(RequestModel):
    topic: str = Field(min_length=1)
    difficulty: Difficulty
    question_type: DisplayType


class GradeCodeRequest(RequestModel):
    code: SubmittedText
    topic: str = Field(min_length=1)
    difficulty: Difficulty
    expected_output: str | None = None


class GradeAnswerRequest(RequestModel):
    question: str = Field(min_length=1)
    user_answer: SubmittedText
    topic: str = Field(min_length=1)
    difficulty: Difficulty


class SolutionRequest(RequestModel):
    topic: str = Field(min_length=1)
    difficulty: Difficulty
    question: str = Field(min_length=1)
    question_type: DisplayType


class TopicRequest(RequestModel):
    difficulty: Difficulty


class ExplainRequest(RequestModel):
    topic: str = Field(min_length=1)


class InterviewTurnRequest(RequestModel):
    topic: str = Field(min_length=1)
    difficulty: InterviewDifficulty
    conversation_history: list[ConversationMessage] = Field(default_factory=list)


# ---------------------------------------------------------------------
# LLM client interface
# ---------------------------------------------------------------------


class LLMClient(Protocol):
    """Minimal interface expected by the gateway for LLM calls."""

    def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Return model text output for a single call."""


# ---------------------------------------------------------------------
# Operation registry
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class Operation:
    """Static description of one AI operation."""

    name: str
    request_model: type[RequestModel]
    response_model: type[BaseModel]
    temperature: float
    redacted_fields: tuple[str, ...] = ()

    @property
    def prompt_file(self) -> str:
        return f"{self.name}.txt"


OPERATIONS: dict[str, Operation] = {
    op.name: op
    for op in (
        Operation("single_question", SingleQuestionRequest, SingleQuestionV1, 0.7),
        Operation("grade_code", GradeCodeRequest, GradingResult, 0.2, ("code",)),
        Operation("grade_answer", GradeAnswerRequest, GradingResult, 0.2, ("user_answer",)),
        Operation("generate_solution", SolutionRequest, GeneratedSolution, 0.2),
        Operation("generate_topic", TopicRequest, TopicSuggestion, 0.9),
        Operation("explain_topic", ExplainRequest, TopicExplanation, 0.4),
        Operation(
            "conduct_interview_turn",
            InterviewTurnRequest,
            InterviewTurnV1,
            0.6,
            ("conversation_history",),
        ),
    )
}

UNAVAILABLE_STATUS_CODES = frozenset({429, 503})
_UNAVAILABLE_MARKERS = ("overloaded", "service unavailable", "resource_exhausted", "rate limit")

TResponse = TypeVar("TResponse", bound=BaseModel)
TRequest = TypeVar("TRequest", bound=RequestModel)

_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _sha12(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]


def _truncate(text: str, max_len: int = 2000) -> str:
    return text if len(text) <= max_len else (text[:max_len] + "...[truncated]")


def _iter_json_object_candidates(text: str) -> list[str]:
    """Find JSON object candidates by decoding from each opening brace."""
    decoder = json.JSONDecoder()
    candidates: list[str] = []
    for idx, char in enumerate(text):
        if char != "{":
            continue
        try:
            obj, end_idx = decoder.raw_decode(text[idx:])
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            candidates.append(text[idx : idx + end_idx])
    return candidates


def _safe_preview_for_logs(*, operation: Operation, payload: dict[str, Any]) -> dict[str, Any]:
    """Redact user-authored text (code, answers, transcripts) before logging."""
    safe = dict(payload)
    for field_name in operation.redacted_fields:
        if field_name in safe:
            safe[field_name] = "[REDACTED]"
    return safe


def _json_dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def classify_upstream_error(err: Exception) -> UpstreamUnavailable | UpstreamError:
    """Map a transport failure to the gateway taxonomy.

    Anything that is not an `LLMClientError` escaped the client unclassified
    and becomes UpstreamError.
    """
    if not isinstance(err, LLMClientError):
        return UpstreamError(f"{type(err).__name__}: {err}")
    message = str(err)
    lowered = message.lower()
    if err.status_code in UNAVAILABLE_STATUS_CODES or any(
        marker in lowered for marker in _UNAVAILABLE_MARKERS
    ):
        return UpstreamUnavailable(message)
    return UpstreamError(message)


# ---------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------


class AIGateway:
    """Stateless, contract-first access to the hosted model."""

    def __init__(
        self,
        *,
        llm_client: LLMClient,
        prompts_dir: Path | None = None,
        logger: logging.Logger | None = None,
        max_output_preview_chars: int = 2000,
        request_json_only: bool = True,
    ) -> None:
        self.llm_client = llm_client
        self.prompts_dir = prompts_dir or Path(__file__).resolve().parents[2] / "prompts"
        self.logger = logger or logging.getLogger("code_crafter.gateway")
        self.max_output_preview_chars = max_output_preview_chars
        self.request_json_only = request_json_only

        self._prompt_cache: dict[str, str] = {}

    # -------------------------
    # Public API
    # -------------------------

    async def invoke(self, operation: str, request: RequestModel | Mapping[str, Any]) -> BaseModel:
        """Run one named operation and return its validated output."""
        op = OPERATIONS.get(operation)
        if op is None:
            raise InvalidRequest(f"unknown operation: {operation}")

        validated = _coerce_request(op.request_model, request)
        request_id = str(uuid4())
        system_prompt = self._build_system_prompt(op)
        system_prompt_hash = _sha12(system_prompt)
        user_payload = validated.model_dump(mode="json", exclude_none=True)

        self.logger.info(
            "gateway_start",
            extra={
                "request_id": request_id,
                "operation": op.name,
                "system_prompt_hash": system_prompt_hash,
                "user_payload_preview": _safe_preview_for_logs(
                    operation=op, payload=user_payload
                ),
            },
        )

        started = time.perf_counter()
        try:
            raw_output = await asyncio.to_thread(
                self.llm_client.generate,
                system_prompt=system_prompt,
                user_prompt=_json_dumps(user_payload),
                temperature=op.temperature,
                metadata=self._build_metadata(
                    request_id=request_id,
                    operation=op,
                    system_prompt_hash=system_prompt_hash,
                ),
            )
        except Exception as err:
            classified = classify_upstream_error(err)
            self.logger.warning(
                "gateway_upstream_failed",
                extra={
                    "request_id": request_id,
                    "operation": op.name,
                    "status_code": getattr(err, "status_code", None),
                    "error_kind": type(classified).__name__,
                    "error": str(err),
                },
            )
            raise classified from err

        self.logger.info(
            "gateway_response",
            extra={
                "request_id": request_id,
                "operation": op.name,
                "elapsed_ms": round((time.perf_counter() - started) * 1000),
                "raw_output_preview": _truncate(raw_output, self.max_output_preview_chars),
            },
        )

        try:
            return self._parse_and_validate(raw_output, op)
        except (json.JSONDecodeError, ValidationError, ValueError) as err:
            self.logger.warning(
                "gateway_invalid",
                extra={
                    "request_id": request_id,
                    "operation": op.name,
                    "error_kind": type(err).__name__,
                    "error": str(err),
                },
            )
            raise SchemaViolation(operation=op.name, last_error=str(err)) from err

    async def generate_question(
        self, request: QuestionRequest | Mapping[str, Any]
    ) -> GeneratedQuestion:
        """Generate the question(s) for a preference.

        For `both`, the coding and conceptual calls run concurrently and are
        joined: the fetch fails if either call fails, after both finished.
        """
        validated = _coerce_request(QuestionRequest, request)
        preference = validated.preferred_question_type
        if preference == QuestionTypePreference.BOTH:
            display_types = [DisplayType.CODING, DisplayType.CONCEPTUAL]
        else:
            display_types = [DisplayType(preference.value)]

        outcomes = await asyncio.gather(
            *(
                self.generate_single_question(
                    SingleQuestionRequest(
                        topic=validated.topic,
                        difficulty=validated.difficulty,
                        question_type=display_type,
                    )
                )
                for display_type in display_types
            ),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        fields: dict[str, Any] = {"question_type_generated": preference}
        for display_type, single in zip(display_types, outcomes):
            single = cast(SingleQuestionV1, single)
            fields[f"{display_type.value}_question"] = single.question
            fields[f"{display_type.value}_hints"] = single.hints

        try:
            return GeneratedQuestion.model_validate(fields)
        except ValidationError as err:
            raise SchemaViolation(operation="generate_question", last_error=str(err)) from err

    async def generate_single_question(
        self, request: SingleQuestionRequest | Mapping[str, Any]
    ) -> SingleQuestionV1:
        return await self._invoke_as("single_question", request, SingleQuestionV1)

    async def grade_code(self, request: GradeCodeRequest | Mapping[str, Any]) -> GradingResult:
        return await self._invoke_as("grade_code", request, GradingResult)

    async def grade_answer(self, request: GradeAnswerRequest | Mapping[str, Any]) -> GradingResult:
        return await self._invoke_as("grade_answer", request, GradingResult)

    async def generate_solution(
        self, request: SolutionRequest | Mapping[str, Any]
    ) -> GeneratedSolution:
        return await self._invoke_as("generate_solution", request, GeneratedSolution)

    async def generate_topic(self, request: TopicRequest | Mapping[str, Any]) -> TopicSuggestion:
        return await self._invoke_as("generate_topic", request, TopicSuggestion)

    async def explain_topic(self, request: ExplainRequest | Mapping[str, Any]) -> TopicExplanation:
        return await self._invoke_as("explain_topic", request, TopicExplanation)

    async def conduct_interview_turn(
        self, request: InterviewTurnRequest | Mapping[str, Any]
    ) -> InterviewTurnV1:
        return await self._invoke_as("conduct_interview_turn", request, InterviewTurnV1)

    # -------------------------
    # Internals
    # -------------------------

    async def _invoke_as(
        self,
        operation: str,
        request: RequestModel | Mapping[str, Any],
        response_type: type[TResponse],
    ) -> TResponse:
        result = await self.invoke(operation, request)
        return cast(response_type, result)

    def _build_metadata(
        self,
        *,
        request_id: str,
        operation: Operation,
        system_prompt_hash: str,
    ) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "request_id": request_id,
            "operation": operation.name,
            "system_prompt_hash": system_prompt_hash,
            "target_schema_name": operation.response_model.__name__,
        }
        if self.request_json_only:
            meta["json_only"] = True
        return meta

    def _build_system_prompt(self, operation: Operation) -> str:
        return "\n\n".join(
            [
                self._load_prompt("operations", operation.prompt_file),
                self._load_prompt("common", "json_rules.txt"),
            ]
        )

    def _parse_and_validate(self, raw_output: str, operation: Operation) -> BaseModel:
        """Parse model text into JSON, then validate with strict contracts."""
        json_text = self._extract_json_text(raw_output)
        data = json.loads(json_text)

        if not isinstance(data, dict):
            raise ValueError("output JSON must be an object")

        return operation.response_model.model_validate(data)

    @classmethod
    def _extract_json_text(cls, raw_output: str) -> str:
        """
        Extract a JSON object from model output, tolerating code fences and extra text.

        Strategy:
        1) Strip and remove leading BOM.
        2) Remove markdown fences if present.
        3) Fast path: substring between first "{" and last "}" if it decodes.
        4) Slow path: scan JSON-looking candidates and decode the first valid dict.
        """
        text = raw_output.strip().lstrip("\ufeff")
        text = _JSON_FENCE_RE.sub("", text).strip()

        start_idx = text.find("{")
        end_idx = text.rfind("}")
        if start_idx != -1 and end_idx != -1 and end_idx > start_idx:
            candidate = text[start_idx : end_idx + 1]
            try:
                json.loads(candidate)
                return candidate
            except json.JSONDecodeError:
                pass

        candidates = _iter_json_object_candidates(text)
        if candidates:
            return candidates[0]
        return text

    def _load_prompt(self, folder: str, filename: str) -> str:
        """Load one prompt file from prompts/<folder> (cached)."""
        cache_key = f"{folder}/{filename}"
        if cache_key in self._prompt_cache:
            return self._prompt_cache[cache_key]

        path = self.prompts_dir / folder / filename
        if not path.exists():
            raise FileNotFoundError(f"Missing prompt file: {path}")

        content = path.read_text(encoding="utf-8").strip()
        self._prompt_cache[cache_key] = content
        return content


def _coerce_request(
    model: type[TRequest], request: RequestModel | Mapping[str, Any]
) -> TRequest:
    """Validate a request against its contract; fail before any network call."""
    if isinstance(request, model):
        return request
    try:
        if isinstance(request, BaseModel):
            return model.model_validate(request.model_dump())
        return model.model_validate(dict(request))
    except ValidationError as err:
        raise InvalidRequest(f"{model.__name__} rejected: {err}") from err
