"""Process configuration read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


REPO_ROOT = Path(__file__).resolve().parents[2]

LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

DEFAULT_MAX_SESSIONS = 1000
DEFAULT_SESSION_IDLE_SECONDS = 3600.0


def load_dotenv(path: Path) -> None:
    """Load KEY=VALUE pairs from a .env file into process environment.

    Variables already set in the environment win over the file.
    """
    if not path.exists():
        return

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.removeprefix("export ").strip()
        value = value.strip()
        if not key:
            continue

        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]

        os.environ.setdefault(key, value)


def _positive_env(name: str, default: float, cast: type) -> Any:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError as err:
        raise ValueError(f"{name} must be numeric") from err
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return value


@dataclass(frozen=True, slots=True)
class Settings:
    """Application settings.

    Environment variables (used by `from_env`):
    - `CODE_CRAFTER_DATABASE_PATH` (default: data/code_crafter.db)
    - `CODE_CRAFTER_PROMPTS_DIR` (default: <repo>/prompts)
    - `CODE_CRAFTER_LOG_LEVEL` (default: INFO)
    - `CODE_CRAFTER_MAX_SESSIONS` (default: 1000): live challenge sessions kept
      in memory; the least recently used one is dropped past this.
    - `CODE_CRAFTER_SESSION_IDLE_SECONDS` (default: 3600): a session untouched
      for this long is dropped.

    Gemini settings are read separately by `GeminiLLMClient.from_env`.
    """

    database_path: str = "data/code_crafter.db"
    prompts_dir: Path = REPO_ROOT / "prompts"
    log_level: str = "INFO"
    max_sessions: int = DEFAULT_MAX_SESSIONS
    session_idle_seconds: float = DEFAULT_SESSION_IDLE_SECONDS

    @classmethod
    def from_env(cls) -> Settings:
        log_level = os.getenv("CODE_CRAFTER_LOG_LEVEL", "INFO").strip().upper()
        if log_level not in LOG_LEVELS:
            raise ValueError(
                f"CODE_CRAFTER_LOG_LEVEL must be one of {', '.join(sorted(LOG_LEVELS))}"
            )

        prompts_raw = os.getenv("CODE_CRAFTER_PROMPTS_DIR")
        return cls(
            database_path=os.getenv("CODE_CRAFTER_DATABASE_PATH", "data/code_crafter.db"),
            prompts_dir=Path(prompts_raw) if prompts_raw else REPO_ROOT / "prompts",
            log_level=log_level,
            max_sessions=_positive_env(
                "CODE_CRAFTER_MAX_SESSIONS", DEFAULT_MAX_SESSIONS, int
            ),
            session_idle_seconds=_positive_env(
                "CODE_CRAFTER_SESSION_IDLE_SECONDS", DEFAULT_SESSION_IDLE_SECONDS, float
            ),
        )
