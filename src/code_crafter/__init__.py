"""Code Crafter: AI-assisted programming practice."""

from .achievements import ACHIEVEMENTS, AchievementEvaluator
from .errors import CodeCrafterError
from .gateway import AIGateway, QuestionRequest
from .interview import InterviewSequencer, InterviewSession
from .llm_client import GeminiLLMClient, LLMClientError
from .models import ChallengeParameters, GeneratedQuestion, GradingResult
from .session import ChallengeSession, Phase
from .stats import aggregate_stats
from .store import AchievementRepository, Database, HistoryRepository

__all__ = [
    "ACHIEVEMENTS",
    "AchievementEvaluator",
    "CodeCrafterError",
    "AIGateway",
    "QuestionRequest",
    "InterviewSequencer",
    "InterviewSession",
    "GeminiLLMClient",
    "LLMClientError",
    "ChallengeParameters",
    "GeneratedQuestion",
    "GradingResult",
    "ChallengeSession",
    "Phase",
    "aggregate_stats",
    "AchievementRepository",
    "Database",
    "HistoryRepository",
]
