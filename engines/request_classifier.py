"""Detect learner messages that ask for the final answer outright."""

from __future__ import annotations

import re
from typing import Optional, Pattern, Sequence

# Indonesian first, then English. Heuristic by nature; extend with care since
# a false positive costs the learner a free deflection, not a token.
ANSWER_REQUEST_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"jawab(an)?nya\s*(apa|berapa)", re.IGNORECASE),
    re.compile(r"apa\s*jawab(an)?nya", re.IGNORECASE),
    re.compile(r"berapa\s*hasil(nya)?", re.IGNORECASE),
    re.compile(r"kasih\s*jawab(an)?", re.IGNORECASE),
    re.compile(r"beri\s*jawab(an)?", re.IGNORECASE),
    re.compile(r"tell\s*me\s*the\s*answer", re.IGNORECASE),
    re.compile(r"what('s|\s+is)\s*the\s*answer", re.IGNORECASE),
    re.compile(r"give\s*me\s*the\s*answer", re.IGNORECASE),
    re.compile(r"just\s*tell\s*me", re.IGNORECASE),
)


class RequestClassifier:
    def __init__(self, patterns: Optional[Sequence[Pattern[str]]] = None) -> None:
        self.patterns = tuple(patterns) if patterns is not None else ANSWER_REQUEST_PATTERNS

    def is_answer_request(self, text: Optional[str]) -> bool:
        if not text:
            return False
        return any(pattern.search(text) for pattern in self.patterns)

    def matched_pattern(self, text: Optional[str]) -> Optional[str]:
        """Return the source of the first matching pattern, for audit logs."""
        if not text:
            return None
        for pattern in self.patterns:
            if pattern.search(text):
                return pattern.pattern
        return None
