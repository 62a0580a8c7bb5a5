"""Canonical integrity event taxonomy and the environment-signal bus."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from schemas import EnvironmentSignal, IntegrityEventType, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventRule:
    severity: Severity
    deduction: int


EVENT_TABLE: Dict[str, EventRule] = {
    "exam_started": EventRule("low", 0),
    "exam_ended": EventRule("low", 0),
    "window_blur": EventRule("low", 2),
    "tab_switch": EventRule("medium", 5),
    "rapid_answer": EventRule("medium", 10),
    "unusual_timing": EventRule("medium", 8),
    "copy_attempt": EventRule("high", 15),
    "paste_attempt": EventRule("high", 15),
    "screenshot_attempt": EventRule("high", 20),
    "ai_spike": EventRule("high", 25),
    "browser_devtools": EventRule("high", 30),
}

EVENT_SEVERITY: Dict[str, Severity] = {name: rule.severity for name, rule in EVENT_TABLE.items()}
SCORE_DEDUCTIONS: Dict[str, int] = {name: rule.deduction for name, rule in EVENT_TABLE.items()}

SEVERITY_RANK: Dict[str, int] = {"low": 0, "medium": 1, "high": 2}

# sink(type, details, question_id)
EventSink = Callable[[IntegrityEventType, Optional[str], Optional[str]], None]


@dataclass
class SignalOutcome:
    """What the client should do with the native event, and what was logged."""

    cancel: bool = False
    events: List[IntegrityEventType] = field(default_factory=list)


def _modifier(signal: EnvironmentSignal) -> bool:
    return signal.ctrl or signal.meta


def _keydown_events(signal: EnvironmentSignal) -> List[Tuple[IntegrityEventType, str]]:
    key = signal.key or ""
    hits: List[Tuple[IntegrityEventType, str]] = []
    if _modifier(signal) and key == "c":
        hits.append(("copy_attempt", "Ctrl+C pressed"))
    if _modifier(signal) and key == "v":
        hits.append(("paste_attempt", "Ctrl+V pressed"))
    if key == "PrintScreen":
        hits.append(("screenshot_attempt", "PrintScreen key pressed"))
    if key == "F12":
        hits.append(("browser_devtools", "F12 pressed - possible DevTools"))
    if _modifier(signal) and signal.shift and key == "I":
        hits.append(("browser_devtools", "Ctrl+Shift+I pressed - DevTools shortcut"))
    return hits


class IntegrityEventBus:
    """Translate raw environment signals into canonical integrity events.

    The bus only forwards while a sink is attached, which the session
    lifecycle does on entering monitoring and undoes on leaving it. Clipboard
    and context-menu signals are always cancelled while attached. Keyboard
    shortcuts are mapped on their own, so Ctrl+C followed by the native copy
    event logs two ``copy_attempt`` events.
    """

    def __init__(self) -> None:
        self._sink: Optional[EventSink] = None

    @property
    def attached(self) -> bool:
        return self._sink is not None

    def attach(self, sink: EventSink) -> None:
        self._sink = sink

    def detach(self) -> None:
        self._sink = None

    def map_signal(self, signal: EnvironmentSignal) -> Tuple[bool, List[Tuple[IntegrityEventType, str]]]:
        kind = signal.kind
        if kind == "visibility_change":
            if signal.hidden:
                return False, [("tab_switch", "User switched to another tab")]
            return False, []
        if kind == "window_blur":
            return False, [("window_blur", "Window lost focus")]
        if kind == "copy":
            return True, [("copy_attempt", "User attempted to copy content")]
        if kind == "paste":
            return True, [("paste_attempt", "User attempted to paste content")]
        if kind == "context_menu":
            return True, [("copy_attempt", "Right-click menu blocked")]
        if kind == "keydown":
            return False, _keydown_events(signal)
        return False, []

    def dispatch(self, signal: EnvironmentSignal) -> SignalOutcome:
        sink = self._sink
        if sink is None:
            return SignalOutcome()
        cancel, mapped = self.map_signal(signal)
        outcome = SignalOutcome(cancel=cancel)
        for event_type, details in mapped:
            sink(event_type, details, signal.question_id)
            outcome.events.append(event_type)
        return outcome
