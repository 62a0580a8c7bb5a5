"""Instructor-facing review over finalized integrity sessions."""

from __future__ import annotations

import logging
from types import ModuleType
from typing import Any, Dict, List, Literal, Optional

from pydantic import ValidationError

import db
from audit_log import AUDIT_LOGGER_NAME, channel_logger, json_log
from engines.integrity_events import SEVERITY_RANK
from engines.session_store import SessionStore
from schemas import IntegritySession, ReviewDecision, ReviewStatus, Severity

logger = logging.getLogger(__name__)
_AUDIT_LOGGER = channel_logger(AUDIT_LOGGER_NAME)

SeverityFilter = Literal["all", "low", "medium", "high"]
SortKey = Literal["date", "score"]
ScoreBand = Literal["good", "warning", "critical"]

GOOD_SCORE = 80
WARNING_SCORE = 50

REVIEW_STATUSES = ("pending", "approved", "flagged", "dismissed")
SCORE_BANDS = ("good", "warning", "critical")


def score_band(score: int) -> ScoreBand:
    if score >= GOOD_SCORE:
        return "good"
    if score >= WARNING_SCORE:
        return "warning"
    return "critical"


def worst_severity(session: IntegritySession) -> Optional[Severity]:
    """Highest severity among the session's events, ``None`` when it has none."""
    worst: Optional[Severity] = None
    for event in session.events:
        if worst is None or SEVERITY_RANK[event.severity] > SEVERITY_RANK[worst]:
            worst = event.severity
    return worst


class ReviewAggregator:
    """Filter, sort and annotate archived sessions.

    Decisions live beside the sessions, keyed by session id, and are never
    folded back into a session's score.
    """

    def __init__(self, sessions: SessionStore, store: ModuleType = db) -> None:
        self.sessions = sessions
        self._store = store
        self._decisions: Dict[str, ReviewDecision] = self._load_decisions()

    def _load_decisions(self) -> Dict[str, ReviewDecision]:
        try:
            rows = self._store.list_review_decisions()
        except Exception:
            logger.exception("Failed to load review decisions")
            return {}
        decisions: Dict[str, ReviewDecision] = {}
        for session_id, row in rows.items():
            try:
                decisions[session_id] = ReviewDecision.model_validate(row)
            except ValidationError as exc:
                logger.warning("Skipping unreadable review decision %s: %s", session_id, exc)
        return decisions

    def list_sessions(
        self,
        severity: SeverityFilter = "all",
        sort_by: SortKey = "date",
        quiz_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[IntegritySession]:
        sessions = self.sessions.all()
        if quiz_id is not None:
            sessions = [s for s in sessions if s.quiz_id == quiz_id]
        if user_id is not None:
            sessions = [s for s in sessions if s.user_id == user_id]
        if severity != "all":
            sessions = [s for s in sessions if any(e.severity == severity for e in s.events)]
        if sort_by == "score":
            sessions.sort(key=lambda s: s.overall_score)
        else:
            sessions.sort(key=lambda s: s.start_time, reverse=True)
        return sessions

    def decision_for(self, session_id: str) -> ReviewDecision:
        decision = self._decisions.get(session_id)
        if decision is None:
            return ReviewDecision(session_id=session_id)
        return decision.model_copy()

    def set_decision(
        self,
        session_id: str,
        status: ReviewStatus,
        reviewer_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> ReviewDecision:
        decision = ReviewDecision(session_id=session_id, status=status, reviewer_id=reviewer_id, note=note)
        self._decisions[session_id] = decision
        try:
            self._store.upsert_review_decision(
                session_id,
                status,
                reviewer_id=reviewer_id,
                note=note,
                decided_at=decision.decided_at.isoformat(),
            )
        except Exception:
            logger.exception("Failed to persist review decision for %s", session_id)
        json_log(
            _AUDIT_LOGGER,
            "review_decision",
            {"session_id": session_id, "status": status, "reviewer_id": reviewer_id},
        )
        return decision.model_copy()

    def summary(self, quiz_id: Optional[str] = None) -> Dict[str, Any]:
        sessions = self.list_sessions(quiz_id=quiz_id)
        by_status = {status: 0 for status in REVIEW_STATUSES}
        by_band = {band: 0 for band in SCORE_BANDS}
        for session in sessions:
            by_status[self.decision_for(session.session_id).status] += 1
            by_band[score_band(session.overall_score)] += 1
        average = (
            round(sum(s.overall_score for s in sessions) / len(sessions), 1) if sessions else None
        )
        return {
            "total_sessions": len(sessions),
            "average_score": average,
            "by_status": by_status,
            "by_band": by_band,
        }
