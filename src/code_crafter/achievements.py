"""Badge catalog and the rules that award badges after a passing attempt."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from .models import (
    Achievement,
    ChallengeHistoryEntry,
    Difficulty,
    HistoryFilters,
    UserAchievement,
)


FIRST_PASS_ACHIEVEMENT_ID = "initiate_programmer"

ACHIEVEMENTS: tuple[Achievement, ...] = (
    Achievement(
        id=FIRST_PASS_ACHIEVEMENT_ID,
        name="Initiate Programmer",
        description="Successfully passed your first challenge!",
        icon_name="Award",
    ),
    Achievement(
        id="beginner_challenger_3",
        name="Beginner Challenger",
        description="Passed 3 challenges at Beginner difficulty.",
        icon_name="Star",
        criteria_count=3,
        criteria_difficulty=Difficulty.BEGINNER,
    ),
    Achievement(
        id="intermediate_adept_3",
        name="Intermediate Adept",
        description="Passed 3 challenges at Intermediate difficulty.",
        icon_name="ShieldCheck",
        criteria_count=3,
        criteria_difficulty=Difficulty.INTERMEDIATE,
    ),
    Achievement(
        id="advanced_virtuoso_3",
        name="Advanced Virtuoso",
        description="Passed 3 challenges at Advanced difficulty.",
        icon_name="Gem",
        criteria_count=3,
        criteria_difficulty=Difficulty.ADVANCED,
    ),
)


def get_achievement(achievement_id: str) -> Achievement | None:
    for achievement in ACHIEVEMENTS:
        if achievement.id == achievement_id:
            return achievement
    return None


def due_achievements(
    history: Sequence[ChallengeHistoryEntry],
    new_entry: ChallengeHistoryEntry,
    catalog: Sequence[Achievement] = ACHIEVEMENTS,
) -> list[Achievement]:
    """Return the badges whose trigger fires for `new_entry`, in catalog order.

    `history` is the user's full history and must already contain
    `new_entry`. Triggers are exact-count matches: a badge for 3 passes fires
    on the third pass at that difficulty, not on the fourth. Whether the user
    already holds a badge is not checked here.
    """
    if not new_entry.passed:
        return []

    passed = [entry for entry in history if entry.passed]
    if all(entry.id != new_entry.id for entry in passed):
        passed.append(new_entry)

    due: list[Achievement] = []
    for achievement in catalog:
        if achievement.id == FIRST_PASS_ACHIEVEMENT_ID:
            if len(passed) == 1:
                due.append(achievement)
            continue

        if achievement.criteria_difficulty is None or achievement.criteria_count is None:
            continue
        if achievement.criteria_difficulty != new_entry.difficulty:
            continue

        passed_at_difficulty = sum(
            1 for entry in passed if entry.difficulty == achievement.criteria_difficulty
        )
        if passed_at_difficulty == achievement.criteria_count:
            due.append(achievement)
    return due


class PassedHistoryReader(Protocol):
    async def query(
        self, user_id: str, filters: HistoryFilters | None = None
    ) -> list[ChallengeHistoryEntry]: ...


class AchievementWriter(Protocol):
    async def exists(self, user_id: str, achievement_id: str) -> bool: ...

    async def award(self, user_id: str, achievement: Achievement) -> UserAchievement | None: ...


class AchievementEvaluator:
    """Awards badges after a passing attempt has been persisted.

    Each due badge is checked against the user's existing records right
    before it is written. The check and the write are separate steps, so two
    passing attempts saved at the same instant could both see "not awarded";
    the SQLite `AchievementRepository.award` closes that gap with a
    conditional insert.
    """

    def __init__(
        self,
        *,
        history: PassedHistoryReader,
        achievements: AchievementWriter,
        catalog: Sequence[Achievement] = ACHIEVEMENTS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.history = history
        self.achievements = achievements
        self.catalog = tuple(catalog)
        self.logger = logger or logging.getLogger("code_crafter.achievements")

    async def evaluate(
        self, user_id: str, new_entry: ChallengeHistoryEntry
    ) -> list[UserAchievement]:
        """Award every due badge the user does not hold yet, in award order."""
        if not new_entry.passed:
            return []

        passed_history = await self.history.query(user_id, HistoryFilters(passed=True))
        awarded: list[UserAchievement] = []
        for achievement in due_achievements(passed_history, new_entry, self.catalog):
            if await self.achievements.exists(user_id, achievement.id):
                self.logger.info(
                    "achievement_already_held",
                    extra={"user_id": user_id, "achievement_id": achievement.id},
                )
                continue

            record = await self.achievements.award(user_id, achievement)
            if record is None:
                continue

            self.logger.info(
                "achievement_awarded",
                extra={
                    "user_id": user_id,
                    "achievement_id": achievement.id,
                    "entry_id": new_entry.id,
                },
            )
            awarded.append(record)
        return awarded
