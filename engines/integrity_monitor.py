"""Integrity session lifecycle: NotStarted -> Monitoring -> Ended."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from audit_log import AUDIT_LOGGER_NAME, channel_logger, json_log
from engines.integrity_events import EVENT_SEVERITY, IntegrityEventBus, SignalOutcome
from engines.integrity_scorer import SeverityScorer
from engines.session_store import SessionStore
from schemas import EnvironmentSignal, IntegrityEvent, IntegritySession

logger = logging.getLogger(__name__)
_AUDIT_LOGGER = channel_logger(AUDIT_LOGGER_NAME)


class MonitorState(str, Enum):
    NOT_STARTED = "not_started"
    MONITORING = "monitoring"
    ENDED = "ended"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class IntegrityMonitor:
    """Observe one learner's attempt at one assessment.

    ``start`` opens the session and attaches the signal bus, ``stop`` seals
    it into the session store and detaches the bus. Anything logged before
    ``start`` or after ``stop`` is dropped; the state machine never leaves
    ``ENDED``.
    """

    def __init__(
        self,
        user_id: str,
        store: SessionStore,
        *,
        scorer: Optional[SeverityScorer] = None,
        bus: Optional[IntegrityEventBus] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.scorer = scorer or SeverityScorer()
        self.bus = bus or IntegrityEventBus()
        self._clock = clock
        self.state = MonitorState.NOT_STARTED
        self._session: Optional[IntegritySession] = None
        self.final_session: Optional[IntegritySession] = None

    @property
    def is_monitoring(self) -> bool:
        return self.state is MonitorState.MONITORING

    @property
    def current_session(self) -> Optional[IntegritySession]:
        return self._session.model_copy(deep=True) if self._session else None

    def calculate_integrity_score(self, session: IntegritySession) -> int:
        return self.scorer.calculate_integrity_score(session)

    def _append(self, event_type: str, details: Optional[str], question_id: Optional[str]) -> IntegrityEvent:
        assert self._session is not None
        event = IntegrityEvent(
            id=_new_id("evt"),
            type=event_type,
            timestamp=self._clock(),
            severity=EVENT_SEVERITY[event_type],
            details=details,
            question_id=question_id,
        )
        self.scorer.apply(self._session, event)
        return event

    def start(self, quiz_id: str) -> Optional[IntegritySession]:
        if self.state is not MonitorState.NOT_STARTED:
            logger.warning(
                "Ignoring start for %s on quiz %s; monitor is %s",
                self.user_id,
                quiz_id,
                self.state.value,
            )
            return None
        self._session = IntegritySession(
            session_id=_new_id("session"),
            quiz_id=quiz_id,
            user_id=self.user_id,
            start_time=self._clock(),
        )
        self._append("exam_started", "Exam session started", None)
        self.bus.attach(self._on_bus_event)
        self.state = MonitorState.MONITORING
        json_log(
            _AUDIT_LOGGER,
            "integrity_monitoring_started",
            {"user_id": self.user_id, "quiz_id": quiz_id, "session_id": self._session.session_id},
        )
        return self.current_session

    def log_event(
        self,
        event_type: str,
        details: Optional[str] = None,
        question_id: Optional[str] = None,
    ) -> Optional[IntegrityEvent]:
        if self.state is not MonitorState.MONITORING or self._session is None:
            return None
        if event_type not in EVENT_SEVERITY:
            logger.warning("Ignoring unknown integrity event type %r for %s", event_type, self.user_id)
            return None
        event = self._append(event_type, details, question_id)
        logger.info("Integrity event %s for %s: %s", event_type, self.user_id, details or "")
        return event

    def _on_bus_event(self, event_type: str, details: Optional[str], question_id: Optional[str]) -> None:
        self.log_event(event_type, details, question_id)

    def handle_signal(self, signal: EnvironmentSignal) -> SignalOutcome:
        return self.bus.dispatch(signal)

    def stop(self) -> Optional[IntegritySession]:
        if self.state is not MonitorState.MONITORING or self._session is None:
            return None
        self.bus.detach()
        self._append("exam_ended", "Exam session ended", None)
        session = self._session
        session.end_time = self._clock()
        session.overall_score = self.scorer.calculate_integrity_score(session)
        self.store.append(session)
        self.final_session = session.model_copy(deep=True)
        self._session = None
        self.state = MonitorState.ENDED
        json_log(
            _AUDIT_LOGGER,
            "integrity_monitoring_stopped",
            {
                "user_id": self.user_id,
                "quiz_id": session.quiz_id,
                "session_id": session.session_id,
                "overall_score": session.overall_score,
                "events": len(session.events),
            },
        )
        return self.final_session.model_copy(deep=True)
