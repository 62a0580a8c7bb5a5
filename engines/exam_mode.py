"""Exam-mode switch and the open/closed state of the assistance panel."""

from __future__ import annotations

import logging
from typing import Literal

from schemas import QuizSettings

logger = logging.getLogger(__name__)

TaskMode = Literal["locked", "hint-only"]

# Timed quizzes shorter than this leave no room for assistance.
MIN_ASSISTED_TIME_LIMIT_MINUTES = 10


class ExamModeGate:
    def __init__(self, active: bool = False) -> None:
        self.active = active
        self.panel_open = False

    def set(self, active: bool) -> None:
        self.active = bool(active)
        if self.active and self.panel_open:
            self.panel_open = False
            logger.info("Exam mode enabled; assistance panel closed")

    def toggle_panel(self) -> bool:
        if not self.active:
            self.panel_open = not self.panel_open
        return self.panel_open

    def check_task_mode(self, settings: QuizSettings) -> TaskMode:
        if settings.exam_mode or not settings.ai_hints_enabled:
            return "locked"
        if settings.time_limit and settings.time_limit < MIN_ASSISTED_TIME_LIMIT_MINUTES:
            return "locked"
        return "hint-only"
