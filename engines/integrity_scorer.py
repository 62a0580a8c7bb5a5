"""Integrity score derived from weighted event deductions."""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from engines.integrity_events import SCORE_DEDUCTIONS
from schemas import IntegrityEvent, IntegritySession

MAX_SCORE = 100

# Summary counter bumped for each event type; paste counts as a copy attempt.
_COUNTER_FIELDS = {
    "tab_switch": "tab_switch_count",
    "copy_attempt": "copy_attempts",
    "paste_attempt": "copy_attempts",
    "rapid_answer": "rapid_answers",
}


class SeverityScorer:
    def __init__(self, deductions: Optional[Mapping[str, int]] = None) -> None:
        self.deductions = dict(deductions or SCORE_DEDUCTIONS)

    def deduction(self, event_type: str) -> int:
        return self.deductions.get(event_type, 0)

    def score(self, events: Iterable[IntegrityEvent]) -> int:
        total = sum(self.deduction(event.type) for event in events)
        return max(0, MAX_SCORE - total)

    def calculate_integrity_score(self, session: IntegritySession) -> int:
        return self.score(session.events)

    def apply(self, session: IntegritySession, event: IntegrityEvent) -> None:
        """Append ``event`` and bring counters and score up to date."""
        session.events.append(event)
        counter = _COUNTER_FIELDS.get(event.type)
        if counter:
            setattr(session, counter, getattr(session, counter) + 1)
        session.overall_score = self.score(session.events)
