"""SQLite-backed history and achievement storage.

Two tables mirror the two document collections of the application:
`challenge_history` (one row per graded attempt, append-only) and
`user_achievements` (one row per earned badge). Timestamps are assigned by
the database, never by the caller.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .errors import PermissionDenied, StoreUnavailable
from .models import (
    Achievement,
    AttemptRecord,
    ChallengeHistoryEntry,
    Difficulty,
    HistoryFilters,
    UserAchievement,
)


logger = logging.getLogger("code_crafter.store")

_PERMISSION_MARKERS = (
    "readonly",
    "read-only",
    "not authorized",
    "permission denied",
    "access denied",
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS challenge_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    topic TEXT NOT NULL,
    difficulty TEXT NOT NULL,
    question_type TEXT NOT NULL,
    question TEXT NOT NULL,
    user_solution TEXT NOT NULL,
    score INTEGER NOT NULL,
    passed BOOLEAN NOT NULL,
    grading_result TEXT NOT NULL,
    generated_solution TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

-- No unique index on (user_id, achievement_id): uniqueness is enforced by
-- the conditional insert in AchievementRepository.award.
CREATE TABLE IF NOT EXISTS user_achievements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    achievement_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL,
    icon_name TEXT NOT NULL,
    earned_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_history_user_created ON challenge_history(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_history_user_passed ON challenge_history(user_id, passed, difficulty);
CREATE INDEX IF NOT EXISTS idx_achievements_user ON user_achievements(user_id, achievement_id);
"""


def classify_store_error(err: BaseException) -> PermissionDenied | StoreUnavailable:
    """Map a driver failure to PermissionDenied or StoreUnavailable."""
    message = str(err)
    lowered = message.lower()
    if isinstance(err, PermissionError) or any(
        marker in lowered for marker in _PERMISSION_MARKERS
    ):
        return PermissionDenied(message)
    return StoreUnavailable(message)


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (sqlite3.Error, OSError) as err:
        classified = classify_store_error(err)
        logger.warning(
            "store_failed",
            extra={"action": action, "error_kind": type(classified).__name__, "error": str(err)},
        )
        raise classified from err


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


class Database:
    """Async SQLite connection manager."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Open the connection and create the schema."""
        with store_errors("connect"):
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
            await self._connection.executescript(SCHEMA)
            await self._connection.commit()

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def connection(self) -> aiosqlite.Connection:
        if not self._connection:
            raise StoreUnavailable("Database not connected. Call connect() first.")
        return self._connection


class BaseRepository:
    """Base class for all repositories."""

    def __init__(self, database: Database):
        self.db = database

    @property
    def connection(self) -> aiosqlite.Connection:
        return self.db.connection


class HistoryRepository(BaseRepository):
    """Append-only attempt history."""

    async def append(self, record: AttemptRecord) -> ChallengeHistoryEntry:
        """Insert one attempt. The store assigns id and created_at."""
        conn = self.connection
        grading = record.grading_result
        solution = record.generated_solution
        with store_errors("history_append"):
            cursor = await conn.execute(
                """INSERT INTO challenge_history
                   (user_id, topic, difficulty, question_type, question, user_solution,
                    score, passed, grading_result, generated_solution)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.user_id,
                    record.topic,
                    record.difficulty.value,
                    record.question_type.value,
                    record.question,
                    record.user_solution,
                    grading.score,
                    grading.passed,
                    grading.model_dump_json(),
                    solution.model_dump_json() if solution is not None else None,
                ),
            )
            await conn.commit()
            entry_id = cursor.lastrowid

            cursor = await conn.execute(
                "SELECT * FROM challenge_history WHERE id = ?", (entry_id,)
            )
            row = await cursor.fetchone()

        if row is None:
            raise StoreUnavailable(f"history entry {entry_id} vanished after insert")

        entry = row_to_history_entry(row)
        logger.info(
            "history_appended",
            extra={"user_id": entry.user_id, "entry_id": entry.id, "passed": entry.passed},
        )
        return entry

    async def query(
        self, user_id: str, filters: HistoryFilters | None = None
    ) -> list[ChallengeHistoryEntry]:
        """Return the user's attempts, newest first, matching every given filter."""
        filters = filters or HistoryFilters()
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]

        if filters.topic is not None:
            clauses.append("topic = ?")
            params.append(filters.topic)
        if filters.difficulty is not None:
            clauses.append("difficulty = ?")
            params.append(filters.difficulty.value)
        if filters.passed is not None:
            clauses.append("passed = ?")
            params.append(filters.passed)
        if filters.question_type is not None:
            clauses.append("question_type = ?")
            params.append(filters.question_type.value)

        with store_errors("history_query"):
            cursor = await self.connection.execute(
                f"""SELECT * FROM challenge_history
                    WHERE {' AND '.join(clauses)}
                    ORDER BY created_at DESC, id DESC""",
                params,
            )
            rows = await cursor.fetchall()

        return [row_to_history_entry(row) for row in rows]

    async def count_passed(
        self, user_id: str, difficulty: Difficulty | str | None = None
    ) -> int:
        sql = "SELECT COUNT(*) AS total FROM challenge_history WHERE user_id = ? AND passed = 1"
        params: list[Any] = [user_id]
        if difficulty is not None:
            sql += " AND difficulty = ?"
            params.append(Difficulty(difficulty).value)

        with store_errors("history_count"):
            cursor = await self.connection.execute(sql, params)
            row = await cursor.fetchone()
        return row["total"] if row else 0


class AchievementRepository(BaseRepository):
    """Earned badges, at most one row per (user_id, achievement_id)."""

    async def exists(self, user_id: str, achievement_id: str) -> bool:
        with store_errors("achievement_exists"):
            cursor = await self.connection.execute(
                """SELECT 1 FROM user_achievements
                   WHERE user_id = ? AND achievement_id = ? LIMIT 1""",
                (user_id, achievement_id),
            )
            row = await cursor.fetchone()
        return row is not None

    async def award(self, user_id: str, achievement: Achievement) -> UserAchievement | None:
        """Record a badge unless the user already holds it.

        Returns the new record, or None when nothing was written.
        """
        conn = self.connection
        with store_errors("achievement_award"):
            cursor = await conn.execute(
                """INSERT INTO user_achievements
                   (user_id, achievement_id, name, description, icon_name)
                   SELECT ?, ?, ?, ?, ?
                   WHERE NOT EXISTS (
                       SELECT 1 FROM user_achievements
                       WHERE user_id = ? AND achievement_id = ?
                   )""",
                (
                    user_id,
                    achievement.id,
                    achievement.name,
                    achievement.description,
                    achievement.icon_name,
                    user_id,
                    achievement.id,
                ),
            )
            await conn.commit()
            if cursor.rowcount == 0:
                return None

            cursor = await conn.execute(
                "SELECT * FROM user_achievements WHERE id = ?", (cursor.lastrowid,)
            )
            row = await cursor.fetchone()

        return row_to_user_achievement(row) if row is not None else None

    async def list_for_user(self, user_id: str) -> list[UserAchievement]:
        with store_errors("achievement_list"):
            cursor = await self.connection.execute(
                """SELECT * FROM user_achievements
                   WHERE user_id = ?
                   ORDER BY earned_at DESC, id DESC""",
                (user_id,),
            )
            rows = await cursor.fetchall()
        return [row_to_user_achievement(row) for row in rows]


def row_to_history_entry(row: aiosqlite.Row) -> ChallengeHistoryEntry:
    generated_solution = row["generated_solution"]
    return ChallengeHistoryEntry(
        id=row["id"],
        user_id=row["user_id"],
        topic=row["topic"],
        difficulty=row["difficulty"],
        question_type=row["question_type"],
        question=row["question"],
        user_solution=row["user_solution"],
        grading_result=json.loads(row["grading_result"]),
        generated_solution=json.loads(generated_solution) if generated_solution else None,
        created_at=_parse_timestamp(row["created_at"]),
    )


def row_to_user_achievement(row: aiosqlite.Row) -> UserAchievement:
    return UserAchievement(
        id=row["id"],
        user_id=row["user_id"],
        achievement_id=row["achievement_id"],
        name=row["name"],
        description=row["description"],
        icon_name=row["icon_name"],
        earned_at=_parse_timestamp(row["earned_at"]),
    )
