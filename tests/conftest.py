from __future__ import annotations

import json
import threading
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest_asyncio

from code_crafter.store import AchievementRepository, Database, HistoryRepository


class StubLLMClient:
    """Answers by operation name; `single_question` is keyed per question type.

    An output may be a dict (sent as JSON), a raw string, or an exception to raise.
    """

    def __init__(self, outputs: dict[str, Any] | None = None) -> None:
        self.outputs = dict(outputs or {})
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        metadata = metadata or {}
        payload = json.loads(user_prompt)
        with self._lock:
            self.calls.append(
                {
                    "system_prompt": system_prompt,
                    "user_prompt": user_prompt,
                    "payload": payload,
                    "temperature": temperature,
                    "metadata": metadata,
                }
            )

        operation = metadata.get("operation")
        key = operation
        if operation == "single_question":
            key = f"single_question:{payload['question_type']}"
        output = self.outputs.get(key, self.outputs.get(operation))
        if output is None:
            raise RuntimeError(f"No stub output for {key}")
        if isinstance(output, BaseException):
            raise output
        return output if isinstance(output, str) else json.dumps(output)

    def operations(self) -> list[str]:
        return [call["metadata"]["operation"] for call in self.calls]


def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def question_output(kind: str = "coding") -> dict[str, Any]:
    return {
        "question": f"Write a {kind} answer about closures.",
        "hints": ["Think about scope.", "Functions capture variables."],
    }


def grade_output(score: int) -> dict[str, Any]:
    return {"score": score, "feedback": "Reviewed.", "passed": score >= 60}


def solution_output() -> dict[str, Any]:
    return {
        "solution": "function counter() { let n = 0; return () => ++n; }",
        "explanation": "The inner function keeps a reference to n.",
    }


def default_outputs(score: int = 80) -> dict[str, Any]:
    return {
        "single_question:coding": question_output("coding"),
        "single_question:conceptual": question_output("conceptual"),
        "grade_code": grade_output(score),
        "grade_answer": grade_output(score),
        "generate_solution": solution_output(),
        "generate_topic": {"topic": "Python Decorators"},
        "explain_topic": {
            "explanation": "A closure is a function bundled with its lexical scope.",
            "key_concepts": ["scope", "capture"],
        },
        "conduct_interview_turn": {"ai_response_text": "Tell me about closures."},
    }


@pytest_asyncio.fixture
async def database() -> AsyncIterator[Database]:
    db = Database(":memory:")
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def history_repo(database: Database) -> HistoryRepository:
    return HistoryRepository(database)


@pytest_asyncio.fixture
async def achievement_repo(database: Database) -> AchievementRepository:
    return AchievementRepository(database)
