# app.py: StudyGuard v1.0.0
# - Hint gating (tokens, exam mode, Socratic deflection, guardrail)
# - Integrity monitoring sessions and the instructor review surface

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

import db
from engines.hint_generator import HintGeneratorClient
from engines.hint_orchestrator import HintOrchestrator
from engines.integrity_monitor import IntegrityMonitor
from engines.review import ReviewAggregator, score_band, worst_severity
from engines.session_store import SessionStore
from schemas import (
    BonusReason,
    EnvironmentSignal,
    HintRequest,
    IntegrityEventType,
    IntegritySession,
    Language,
    QuizSettings,
    ReviewStatus,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        services.reset()
        logger.info("StudyGuard ready (db=%s)", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="StudyGuard v1.0.0", version="1.0.0", lifespan=_lifespan)


class ServiceRegistry:
    """Per-learner orchestrators and monitors plus the shared session archive.

    Engines never reach for globals; this registry is the only place the API
    layer keeps them alive between requests.
    """

    def __init__(self) -> None:
        self._orchestrators: Dict[str, HintOrchestrator] = {}
        self._monitors: Dict[str, IntegrityMonitor] = {}
        self._sessions: Optional[SessionStore] = None
        self._review: Optional[ReviewAggregator] = None
        # Sync endpoints run in the worker thread pool.
        self._lock = threading.RLock()

    def reset(self) -> None:
        with self._lock:
            self._orchestrators.clear()
            self._monitors.clear()
            self._sessions = None
            self._review = None

    @property
    def sessions(self) -> SessionStore:
        with self._lock:
            if self._sessions is None:
                self._sessions = SessionStore()
            return self._sessions

    @property
    def review(self) -> ReviewAggregator:
        with self._lock:
            if self._review is None:
                self._review = ReviewAggregator(self.sessions)
            return self._review

    def orchestrator(self, user_id: str) -> HintOrchestrator:
        with self._lock:
            orchestrator = self._orchestrators.get(user_id)
            if orchestrator is None:
                orchestrator = HintOrchestrator(user_id, generator=HintGeneratorClient())
                self._orchestrators[user_id] = orchestrator
            return orchestrator

    def active_monitor(self, user_id: str) -> Optional[IntegrityMonitor]:
        with self._lock:
            monitor = self._monitors.get(user_id)
        if monitor is not None and monitor.is_monitoring:
            return monitor
        return None

    def new_monitor(self, user_id: str) -> IntegrityMonitor:
        with self._lock:
            monitor = IntegrityMonitor(user_id, self.sessions)
            self._monitors[user_id] = monitor
            return monitor


services = ServiceRegistry()


def _user(user_id: str) -> str:
    cleaned = (user_id or "").strip()
    if not cleaned:
        raise HTTPException(status_code=400, detail="user_id is required")
    return cleaned


def _session_payload(session: IntegritySession) -> Dict[str, Any]:
    payload = session.model_dump(mode="json")
    payload["worst_severity"] = worst_severity(session)
    payload["score_band"] = score_band(session.overall_score)
    return payload


# ---------- Request bodies ----------


class HintRequestBody(BaseModel):
    user_id: str
    question_id: str
    attempt_count: int = Field(default=0, ge=0)
    user_message: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class AIHintBody(BaseModel):
    user_id: str
    question: str = Field(min_length=1)
    subject: Optional[str] = None
    attempt_count: int = Field(default=0, ge=0)
    user_message: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    language: Language = "id"


class UserBody(BaseModel):
    user_id: str


class ExamModeBody(BaseModel):
    user_id: str
    active: bool


class BonusBody(BaseModel):
    user_id: str
    reason: BonusReason


class TaskModeBody(BaseModel):
    user_id: str
    settings: QuizSettings = Field(default_factory=QuizSettings)


class MonitorStartBody(BaseModel):
    user_id: str
    quiz_id: str = Field(min_length=1)


class IntegrityEventBody(BaseModel):
    user_id: str
    type: IntegrityEventType
    details: Optional[str] = None
    question_id: Optional[str] = None


class SignalBody(BaseModel):
    user_id: str
    signal: EnvironmentSignal


class ReviewDecisionBody(BaseModel):
    session_id: str = Field(min_length=1)
    status: ReviewStatus
    reviewer_id: Optional[str] = None
    note: Optional[str] = None


# ---------- Hints ----------


@app.get("/hints/status")
def hint_status(user_id: str):
    return services.orchestrator(_user(user_id)).status()


@app.post("/hints/request")
def request_hint(body: HintRequestBody):
    orchestrator = services.orchestrator(_user(body.user_id))
    request = HintRequest(
        question_id=body.question_id,
        attempt_count=body.attempt_count,
        user_message=body.user_message,
        context=body.context,
    )
    return orchestrator.request_hint(request).model_dump(mode="json")


@app.post("/hints/ai")
async def request_ai_hint(body: AIHintBody):
    orchestrator = services.orchestrator(_user(body.user_id))
    result = await orchestrator.request_ai_hint(
        body.question,
        body.subject,
        body.attempt_count,
        user_message=body.user_message,
        context=body.context,
        language=body.language,
    )
    payload = result.model_dump(mode="json")
    payload["tokens_remaining"] = orchestrator.ledger.total
    return payload


@app.post("/hints/exam-mode")
def set_exam_mode(body: ExamModeBody):
    orchestrator = services.orchestrator(_user(body.user_id))
    orchestrator.set_exam_mode(body.active)
    return orchestrator.status()


@app.post("/hints/bonus")
def award_bonus(body: BonusBody):
    orchestrator = services.orchestrator(_user(body.user_id))
    bonus = orchestrator.award_bonus_token(body.reason)
    return {"status": "ok", "bonus_tokens": bonus, "total_tokens": orchestrator.ledger.total}


@app.post("/hints/reset")
def reset_daily_tokens(body: UserBody):
    orchestrator = services.orchestrator(_user(body.user_id))
    orchestrator.reset_daily_tokens()
    return orchestrator.status()


@app.post("/hints/panel")
def toggle_panel(body: UserBody):
    orchestrator = services.orchestrator(_user(body.user_id))
    return {"panel_open": orchestrator.toggle_panel(), "exam_mode": orchestrator.exam_mode}


@app.post("/hints/task-mode")
def check_task_mode(body: TaskModeBody):
    orchestrator = services.orchestrator(_user(body.user_id))
    return {"mode": orchestrator.check_task_mode(body.settings)}


# ---------- Integrity ----------


@app.post("/integrity/start")
def start_monitoring(body: MonitorStartBody):
    user_id = _user(body.user_id)
    monitor = services.active_monitor(user_id)
    if monitor is not None:
        logger.info("Monitor for %s already active; start ignored", user_id)
        current = monitor.current_session
        return {"status": "already_monitoring", "session": current.model_dump(mode="json") if current else None}
    session = services.new_monitor(user_id).start(body.quiz_id)
    return {"status": "monitoring", "session": session.model_dump(mode="json") if session else None}


@app.post("/integrity/stop")
def stop_monitoring(body: UserBody):
    monitor = services.active_monitor(_user(body.user_id))
    if monitor is None:
        return {"status": "not_monitoring", "session": None}
    session = monitor.stop()
    return {"status": "ended", "session": _session_payload(session) if session else None}


@app.post("/integrity/event")
def log_integrity_event(body: IntegrityEventBody):
    monitor = services.active_monitor(_user(body.user_id))
    if monitor is None:
        return {"status": "ignored", "event": None}
    event = monitor.log_event(body.type, body.details, body.question_id)
    current = monitor.current_session
    return {
        "status": "logged" if event else "ignored",
        "event": event.model_dump(mode="json") if event else None,
        "overall_score": current.overall_score if current else None,
    }


@app.post("/integrity/signal")
def handle_signal(body: SignalBody):
    monitor = services.active_monitor(_user(body.user_id))
    if monitor is None:
        return {"cancel": False, "events": []}
    outcome = monitor.handle_signal(body.signal)
    return {"cancel": outcome.cancel, "events": list(outcome.events)}


@app.get("/integrity/sessions")
def list_integrity_sessions(quiz_id: Optional[str] = None, user_id: Optional[str] = None):
    store = services.sessions
    if quiz_id is not None:
        sessions: List[IntegritySession] = store.sessions_by_quiz(quiz_id)
        if user_id is not None:
            sessions = [s for s in sessions if s.user_id == user_id]
    elif user_id is not None:
        sessions = store.sessions_by_student(user_id)
    else:
        sessions = store.all()
    return {"sessions": [_session_payload(s) for s in sessions]}


# ---------- Review ----------


@app.get("/review/sessions")
def review_sessions(
    severity: Literal["all", "low", "medium", "high"] = "all",
    sort_by: Literal["date", "score"] = "date",
    quiz_id: Optional[str] = None,
    user_id: Optional[str] = None,
):
    review = services.review
    sessions = review.list_sessions(severity=severity, sort_by=sort_by, quiz_id=quiz_id, user_id=user_id)
    items = []
    for session in sessions:
        payload = _session_payload(session)
        payload["decision"] = review.decision_for(session.session_id).model_dump(mode="json")
        items.append(payload)
    return {"sessions": items}


@app.post("/review/decision")
def review_decision(body: ReviewDecisionBody):
    if services.sessions.get(body.session_id) is None:
        raise HTTPException(status_code=404, detail="session not found")
    decision = services.review.set_decision(
        body.session_id,
        body.status,
        reviewer_id=body.reviewer_id,
        note=body.note,
    )
    return decision.model_dump(mode="json")


@app.get("/review/summary")
def review_summary(quiz_id: Optional[str] = None):
    return services.review.summary(quiz_id=quiz_id)
