"""Response guardrail that keeps generated hints from leaking final answers."""

from __future__ import annotations

import re
from typing import Optional

from schemas import GuardrailVerdict, LocalizedText

_TRAILING_RESULT = re.compile(r"=\s*\d+\s*$")
_ANSWER_PHRASES = (
    re.compile(r"jawaban(nya)?\s*(adalah|=)", re.IGNORECASE),
    re.compile(r"the\s*answer\s*is", re.IGNORECASE),
)
_COMPLETED_STEPS = (
    re.compile(r"langkah\s*\d+.*=.*\d+$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"step\s*\d+.*=.*\d+$", re.IGNORECASE | re.MULTILINE),
)
_CHOICE_DISCLOSURE = (
    re.compile(r"pilih(lah)?\s+(opsi|pilihan|jawaban)\s+[A-E]\b", re.IGNORECASE),
    re.compile(r"(opsi|pilihan)\s+yang\s+benar\s+(adalah\s+)?[A-E]\b", re.IGNORECASE),
    re.compile(r"(choose|pick|select)\s+option\s+[A-E]\b", re.IGNORECASE),
    re.compile(r"correct\s+(option|choice)\s+is\s+[A-E]\b", re.IGNORECASE),
)

SAFE_SUBSTITUTE = LocalizedText(
    id="Coba pikirkan langkah pertama yang diperlukan.",
    en="Try to think about the first step that is needed.",
)


class ResponseGuardrail:
    """Inspect generated hint text and neutralize answer leaks.

    Checks run in a fixed order and the first hit decides the verdict:

    1. a trailing ``= <number>`` is masked as ``= ?``;
    2. "the answer is" phrasing is blocked;
    3. a numbered step whose line resolves to a number is blocked;
    4. naming the correct answer choice is blocked.
    """

    def __init__(self, substitute: LocalizedText = SAFE_SUBSTITUTE) -> None:
        self.substitute = substitute

    def validate(self, text: str) -> GuardrailVerdict:
        if _TRAILING_RESULT.search(text):
            return GuardrailVerdict(
                allowed=False,
                violation_kind="direct_answer",
                rewritten_text=_TRAILING_RESULT.sub("= ?", text),
            )
        if any(pattern.search(text) for pattern in _ANSWER_PHRASES):
            return GuardrailVerdict(allowed=False, violation_kind="direct_answer")
        if any(pattern.search(text) for pattern in _COMPLETED_STEPS):
            return GuardrailVerdict(allowed=False, violation_kind="step_complete")
        if any(pattern.search(text) for pattern in _CHOICE_DISCLOSURE):
            return GuardrailVerdict(allowed=False, violation_kind="full_solution")
        return GuardrailVerdict(allowed=True)

    def sanitize(self, text: str, language: str = "id") -> tuple[str, GuardrailVerdict]:
        """Return the text safe to show and the verdict that produced it."""
        verdict = self.validate(text)
        if verdict.allowed:
            return text, verdict
        replacement: Optional[str] = verdict.rewritten_text
        return (replacement or self.substitute.pick(language)), verdict
