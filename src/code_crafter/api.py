"""HTTP API surface for Code Crafter."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .achievements import AchievementEvaluator
from .errors import (
    CodeCrafterError,
    EmptySubmission,
    InvalidRequest,
    InvalidTransition,
    MissingParameters,
    PermissionDenied,
    SchemaViolation,
    StoreUnavailable,
    UpstreamError,
    UpstreamUnavailable,
)
from .gateway import AIGateway, ExplainRequest, InterviewTurnRequest, TopicRequest
from .interview import InterviewSequencer
from .llm_client import GeminiLLMClient
from .models import (
    ChallengeHistoryEntry,
    ChallengeParameters,
    Difficulty,
    DisplayType,
    GeneratedSolution,
    GradingResult,
    HistoryFilters,
    InterviewTurnV1,
    QuestionTypePreference,
    TopicExplanation,
    TopicSuggestion,
    UserAchievement,
)
from .session import ChallengeSession, Notice
from .settings import REPO_ROOT, Settings, load_dotenv
from .stats import ProfileStats, aggregate_stats
from .store import AchievementRepository, Database, HistoryRepository


logger = logging.getLogger("code_crafter.api")

ERROR_STATUS: dict[type[CodeCrafterError], int] = {
    MissingParameters: 400,
    EmptySubmission: 400,
    InvalidRequest: 400,
    InvalidTransition: 409,
    UpstreamUnavailable: 503,
    UpstreamError: 502,
    SchemaViolation: 502,
    PermissionDenied: 403,
    StoreUnavailable: 503,
}


def status_for(err: CodeCrafterError) -> int:
    for cls in type(err).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


# ---------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------


class NoticeView(BaseModel):
    level: str
    title: str
    message: str


class SessionView(BaseModel):
    session_id: str
    phase: str
    busy: bool = False
    params: ChallengeParameters | None = None
    question_type_generated: QuestionTypePreference | None = None
    display_type: DisplayType | None = None
    question: str | None = None
    hints: list[str] = []
    draft: str | None = None
    error: str | None = None
    grading_result: GradingResult | None = None
    solution: GeneratedSolution | None = None
    persistence_error: str | None = None
    saved_entry_id: int | None = None
    awarded: list[UserAchievement] = []
    notices: list[NoticeView] = []


class DisplayTypeRequest(BaseModel):
    display_type: DisplayType


class SubmitRequest(BaseModel):
    solution_text: str | None = None


class ProfileView(BaseModel):
    stats: ProfileStats
    achievements: list[UserAchievement]


def session_view(session: ChallengeSession) -> SessionView:
    state = session.state
    question = session.question
    draft = getattr(state, "draft", None)
    if draft is None:
        draft = getattr(state, "solution_text", None)

    return SessionView(
        session_id=session.session_id,
        phase=session.phase.value,
        busy=session.is_busy,
        params=session.params,
        question_type_generated=question.question_type_generated if question else None,
        display_type=session.display_type,
        question=session.current_question_text,
        hints=session.current_hints,
        draft=draft,
        error=getattr(state, "error", None),
        grading_result=getattr(state, "result", None),
        solution=getattr(state, "solution", None),
        persistence_error=session.persistence_error,
        saved_entry_id=session.last_entry.id if session.last_entry else None,
        awarded=list(session.awarded),
        notices=[_notice_view(notice) for notice in session.drain_notices()],
    )


def _notice_view(notice: Notice) -> NoticeView:
    return NoticeView(level=notice.level, title=notice.title, message=notice.message)


# ---------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------


class SessionRegistry:
    """In-memory challenge sessions, bounded by count and by idle time.

    Entries are kept in least-recently-used order. Adding past
    `max_sessions` drops the oldest entry, and any entry untouched for
    `idle_seconds` is dropped on the next access. A dropped session is
    left, so a response still in flight for it is ignored.
    """

    def __init__(
        self,
        *,
        max_sessions: int,
        idle_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[ChallengeSession, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, session: ChallengeSession) -> None:
        self.expire()
        self._entries[session.session_id] = (session, self._clock())
        self._entries.move_to_end(session.session_id)
        while len(self._entries) > self.max_sessions:
            oldest = next(iter(self._entries))
            self._drop(oldest, reason="capacity")

    def get(self, session_id: str) -> ChallengeSession | None:
        self.expire()
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        session = entry[0]
        self._entries[session_id] = (session, self._clock())
        self._entries.move_to_end(session_id)
        return session

    def pop(self, session_id: str) -> ChallengeSession | None:
        entry = self._entries.pop(session_id, None)
        return entry[0] if entry else None

    def expire(self) -> int:
        """Drop sessions idle for longer than `idle_seconds`; return how many."""
        cutoff = self._clock() - self.idle_seconds
        expired = 0
        while self._entries:
            session_id, (_, touched) = next(iter(self._entries.items()))
            if touched > cutoff:
                break
            self._drop(session_id, reason="idle")
            expired += 1
        return expired

    def clear(self) -> None:
        for session_id in list(self._entries):
            self._drop(session_id, reason="shutdown")

    def _drop(self, session_id: str, *, reason: str) -> None:
        session, _ = self._entries.pop(session_id)
        session.leave()
        logger.info("session_dropped", extra={"session_id": session_id, "reason": reason})


# ---------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------


def get_gateway(request: Request) -> AIGateway:
    """Return the app gateway, building the Gemini-backed one on first use."""
    app_state = request.app.state
    if app_state.gateway is None:
        try:
            client = GeminiLLMClient.from_env()
        except ValueError as err:
            raise HTTPException(status_code=503, detail=str(err)) from err
        app_state.gateway = AIGateway(
            llm_client=client, prompts_dir=app_state.settings.prompts_dir
        )
    return app_state.gateway


def optional_user(x_user_id: str | None = Header(default=None)) -> str | None:
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()


def require_user(user_id: str | None = Depends(optional_user)) -> str:
    if user_id is None:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return user_id


def get_session(
    session_id: str, request: Request, user_id: str | None = Depends(optional_user)
) -> ChallengeSession:
    session = request.app.state.sessions.get(session_id)
    if session is None or session.user_id != user_id:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------


router = APIRouter()


@router.get("/healthz")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/topics/suggest", response_model=TopicSuggestion)
async def suggest_topic(
    payload: TopicRequest, gateway: AIGateway = Depends(get_gateway)
) -> TopicSuggestion:
    return await gateway.generate_topic(payload)


@router.post("/topics/explain", response_model=TopicExplanation)
async def explain_topic(
    payload: ExplainRequest, gateway: AIGateway = Depends(get_gateway)
) -> TopicExplanation:
    return await gateway.explain_topic(payload)


@router.post("/interview/turn", response_model=InterviewTurnV1)
async def interview_turn(
    payload: InterviewTurnRequest, gateway: AIGateway = Depends(get_gateway)
) -> InterviewTurnV1:
    text = await InterviewSequencer(gateway).next_turn(
        payload.topic, payload.difficulty, payload.conversation_history
    )
    return InterviewTurnV1(ai_response_text=text)


@router.post("/sessions", response_model=SessionView, status_code=201)
async def create_session(
    request: Request,
    payload: dict[str, Any] = Body(default_factory=dict),
    user_id: str | None = Depends(optional_user),
    gateway: AIGateway = Depends(get_gateway),
) -> SessionView:
    app_state = request.app.state
    session = ChallengeSession(
        gateway=gateway,
        history=app_state.history,
        evaluator=app_state.evaluator,
        user_id=user_id,
    )
    await session.fetch_question(payload)
    app_state.sessions.add(session)
    return session_view(session)


@router.get("/sessions/{session_id}", response_model=SessionView)
def read_session(session: ChallengeSession = Depends(get_session)) -> SessionView:
    return session_view(session)


@router.post("/sessions/{session_id}/display-type", response_model=SessionView)
def switch_display_type(
    payload: DisplayTypeRequest, session: ChallengeSession = Depends(get_session)
) -> SessionView:
    session.switch_display_type(payload.display_type)
    return session_view(session)


@router.post("/sessions/{session_id}/submit", response_model=SessionView)
async def submit(
    payload: SubmitRequest, session: ChallengeSession = Depends(get_session)
) -> SessionView:
    await session.submit(payload.solution_text)
    return session_view(session)


@router.post("/sessions/{session_id}/restart", response_model=SessionView)
async def restart(session: ChallengeSession = Depends(get_session)) -> SessionView:
    await session.restart()
    return session_view(session)


@router.delete("/sessions/{session_id}", status_code=204)
def leave(request: Request, session: ChallengeSession = Depends(get_session)) -> Response:
    session.leave()
    request.app.state.sessions.pop(session.session_id)
    return Response(status_code=204)


@router.get("/history", response_model=list[ChallengeHistoryEntry])
async def history(
    request: Request,
    user_id: str = Depends(require_user),
    topic: str | None = Query(default=None),
    difficulty: Difficulty | None = Query(default=None),
    passed: bool | None = Query(default=None),
    question_type: DisplayType | None = Query(default=None),
) -> list[ChallengeHistoryEntry]:
    filters = HistoryFilters(
        topic=topic, difficulty=difficulty, passed=passed, question_type=question_type
    )
    return await request.app.state.history.query(user_id, filters)


@router.get("/achievements", response_model=list[UserAchievement])
async def achievements(
    request: Request, user_id: str = Depends(require_user)
) -> list[UserAchievement]:
    return await request.app.state.achievements.list_for_user(user_id)


@router.get("/profile", response_model=ProfileView)
async def profile(request: Request, user_id: str = Depends(require_user)) -> ProfileView:
    app_state = request.app.state
    entries = await app_state.history.query(user_id)
    earned = await app_state.achievements.list_for_user(user_id)
    return ProfileView(stats=aggregate_stats(entries), achievements=earned)


# ---------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------


async def handle_domain_error(request: Request, err: CodeCrafterError) -> JSONResponse:
    status_code = status_for(err)
    logger.warning(
        "request_failed",
        extra={
            "path": request.url.path,
            "status_code": status_code,
            "error_kind": type(err).__name__,
            "error": str(err),
        },
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": type(err).__name__, "detail": err.user_message},
    )


def create_app(
    settings: Settings | None = None, *, gateway: AIGateway | None = None
) -> FastAPI:
    """Build the application.

    `gateway` replaces the Gemini-backed `AIGateway`, which is otherwise
    created on first use so the app starts without an API key.
    """
    if settings is None:
        load_dotenv(REPO_ROOT / ".env")
        settings = Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        database = Database(settings.database_path)
        await database.connect()
        app.state.database = database
        app.state.history = HistoryRepository(database)
        app.state.achievements = AchievementRepository(database)
        app.state.evaluator = AchievementEvaluator(
            history=app.state.history, achievements=app.state.achievements
        )
        try:
            yield
        finally:
            app.state.sessions.clear()
            await database.close()

    app = FastAPI(title="Code Crafter", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.gateway = gateway
    app.state.sessions = SessionRegistry(
        max_sessions=settings.max_sessions, idle_seconds=settings.session_idle_seconds
    )
    app.add_exception_handler(CodeCrafterError, handle_domain_error)
    app.include_router(router)
    return app


app = create_app()
