"""Mock interview: one model turn per user answer."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from .gateway import InterviewTurnRequest
from .models import ConversationMessage, InterviewDifficulty, InterviewTurnV1, Role


class InterviewGateway(Protocol):
    async def conduct_interview_turn(self, request: InterviewTurnRequest) -> InterviewTurnV1: ...


class InterviewSequencer:
    """Produces the next interviewer turn for a transcript.

    The transcript is sent as-is, oldest message first. An empty transcript
    yields the opening greeting and first question; otherwise the reply is
    a single follow-up.
    """

    def __init__(self, gateway: InterviewGateway, logger: logging.Logger | None = None) -> None:
        self.gateway = gateway
        self.logger = logger or logging.getLogger("code_crafter.interview")

    async def next_turn(
        self,
        topic: str,
        difficulty: InterviewDifficulty | str,
        transcript: Sequence[ConversationMessage],
    ) -> str:
        response = await self.gateway.conduct_interview_turn(
            InterviewTurnRequest(
                topic=topic,
                difficulty=InterviewDifficulty(difficulty),
                conversation_history=list(transcript),
            )
        )
        self.logger.info(
            "interview_turn",
            extra={"topic": topic, "transcript_length": len(transcript)},
        )
        return response.ai_response_text


class InterviewSession:
    """Owns one interview transcript.

    A user answer is appended before the model is asked; the model's reply
    is appended only when the call succeeds. Gateway errors propagate.
    """

    def __init__(
        self,
        sequencer: InterviewSequencer,
        *,
        topic: str,
        difficulty: InterviewDifficulty | str,
    ) -> None:
        self.sequencer = sequencer
        self.topic = topic
        self.difficulty = InterviewDifficulty(difficulty)
        self.transcript: list[ConversationMessage] = []

    async def start(self) -> str:
        self.transcript = []
        return await self._ask()

    async def answer(self, text: str) -> str | None:
        """Send one answer. Blank answers are ignored and return None."""
        if not text.strip():
            return None
        self.transcript.append(ConversationMessage.from_text(Role.USER, text))
        return await self._ask()

    async def _ask(self) -> str:
        reply = await self.sequencer.next_turn(self.topic, self.difficulty, self.transcript)
        self.transcript.append(ConversationMessage.from_text(Role.MODEL, reply))
        return reply
