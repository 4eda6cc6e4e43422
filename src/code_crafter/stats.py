"""Profile statistics aggregated from a user's challenge history."""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime

from pydantic import Field

from .models import ChallengeHistoryEntry, Difficulty, StrictModel


class TopicPerformance(StrictModel):
    name: str
    attempts: int = Field(ge=0)
    passed: int = Field(ge=0)
    pass_rate: int = Field(ge=0, le=100)
    last_attempted: datetime | None = None


class DifficultyPerformance(StrictModel):
    level: Difficulty
    attempts: int = Field(ge=0)
    passed: int = Field(ge=0)
    pass_rate: int = Field(ge=0, le=100)


class ProfileStats(StrictModel):
    total_attempts: int = 0
    total_passed: int = 0
    overall_pass_rate: int = 0
    topic_performance: list[TopicPerformance] = Field(default_factory=list)
    difficulty_performance: list[DifficultyPerformance] = Field(default_factory=list)
    first_challenge_date: datetime | None = None
    last_challenge_date: datetime | None = None


def pass_rate(passed: int, attempts: int) -> int:
    """Whole percent, halves rounded up. Zero attempts gives 0."""
    if attempts <= 0:
        return 0
    return math.floor(passed * 100 / attempts + 0.5)


def aggregate_stats(history: Iterable[ChallengeHistoryEntry]) -> ProfileStats:
    """Summarize history for the profile page.

    Topics are ordered by most recent attempt. Difficulties always appear
    in Beginner, Intermediate, Advanced order, including unattempted ones.
    """
    entries = list(history)
    if not entries:
        return ProfileStats(
            difficulty_performance=[
                DifficultyPerformance(level=level, attempts=0, passed=0, pass_rate=0)
                for level in Difficulty
            ]
        )

    topics: dict[str, dict] = {}
    levels = {level: [0, 0] for level in Difficulty}
    for entry in entries:
        topic = topics.setdefault(entry.topic, {"attempts": 0, "passed": 0, "last": None})
        topic["attempts"] += 1
        if topic["last"] is None or entry.created_at > topic["last"]:
            topic["last"] = entry.created_at

        counts = levels[entry.difficulty]
        counts[0] += 1
        if entry.passed:
            topic["passed"] += 1
            counts[1] += 1

    topic_performance = sorted(
        (
            TopicPerformance(
                name=name,
                attempts=data["attempts"],
                passed=data["passed"],
                pass_rate=pass_rate(data["passed"], data["attempts"]),
                last_attempted=data["last"],
            )
            for name, data in topics.items()
        ),
        key=lambda item: item.last_attempted,
        reverse=True,
    )

    total_passed = sum(1 for entry in entries if entry.passed)
    return ProfileStats(
        total_attempts=len(entries),
        total_passed=total_passed,
        overall_pass_rate=pass_rate(total_passed, len(entries)),
        topic_performance=topic_performance,
        difficulty_performance=[
            DifficultyPerformance(
                level=level,
                attempts=attempts,
                passed=passed,
                pass_rate=pass_rate(passed, attempts),
            )
            for level, (attempts, passed) in levels.items()
        ],
        first_challenge_date=min(entry.created_at for entry in entries),
        last_challenge_date=max(entry.created_at for entry in entries),
    )
