"""Hint level escalation and the fixed template and deflection pools."""

from __future__ import annotations

import random
from typing import Dict, Optional, Sequence

from schemas import HintLevel, LocalizedText

HINT_TEMPLATES: Dict[int, tuple[LocalizedText, ...]] = {
    1: (
        LocalizedText(id="Ingat konsep dasar tentang topik ini...", en="Remember the basic concept about this topic..."),
        LocalizedText(id="Coba ingat-ingat pelajaran sebelumnya.", en="Try to recall the previous lesson."),
        LocalizedText(id="Kunci untuk soal ini adalah memahami...", en="The key to this problem is understanding..."),
    ),
    2: (
        LocalizedText(id="Apa yang terjadi jika kamu mencoba...?", en="What happens if you try...?"),
        LocalizedText(id="Bagaimana menurutmu jika kita mulai dari...?", en="What do you think if we start from...?"),
        LocalizedText(id="Pernahkah kamu bertanya mengapa...?", en="Have you ever wondered why...?"),
    ),
    3: (
        LocalizedText(id="Contoh serupa: jika kita punya...", en="Similar example: if we have..."),
        LocalizedText(id="Mari lihat contoh dengan angka berbeda...", en="Let's look at an example with different numbers..."),
        LocalizedText(id="Bayangkan situasi sederhana dulu...", en="Imagine a simpler situation first..."),
    ),
}

SOCRATIC_RESPONSES: tuple[LocalizedText, ...] = (
    LocalizedText(
        id="Sebelum saya bantu, coba jelaskan dulu apa yang sudah kamu pahami tentang soal ini?",
        en="Before I help, can you explain what you already understand about this problem?",
    ),
    LocalizedText(
        id="Apa langkah pertama yang menurutmu perlu dilakukan?",
        en="What do you think is the first step that needs to be done?",
    ),
    LocalizedText(
        id="Bagian mana dari soal ini yang membuatmu bingung?",
        en="Which part of this problem confuses you?",
    ),
    LocalizedText(
        id="Coba tuliskan dulu apa yang sudah kamu coba.",
        en="Try writing down what you've already tried.",
    ),
)


def hint_level(attempt_count: int) -> HintLevel:
    """1 for the first attempt, 2 for attempts 2-3, 3 from the fourth on."""
    if attempt_count <= 1:
        return 1
    if attempt_count <= 3:
        return 2
    return 3


def coerce_level(value: object, fallback: HintLevel) -> HintLevel:
    if isinstance(value, bool):
        return fallback
    try:
        level = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return fallback
    if level in (1, 2, 3):
        return level  # type: ignore[return-value]
    return fallback


class HintLevelPolicy:
    def __init__(
        self,
        rng: Optional[random.Random] = None,
        templates: Optional[Dict[int, Sequence[LocalizedText]]] = None,
        deflections: Optional[Sequence[LocalizedText]] = None,
    ) -> None:
        self._rng = rng or random.Random()
        self.templates = templates or HINT_TEMPLATES
        self.deflections = tuple(deflections) if deflections is not None else SOCRATIC_RESPONSES

    def level_for(self, attempt_count: int) -> HintLevel:
        return hint_level(attempt_count)

    def template_for(self, level: HintLevel) -> LocalizedText:
        return self._rng.choice(tuple(self.templates[level]))

    def deflection(self) -> LocalizedText:
        return self._rng.choice(self.deflections)
