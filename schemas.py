"""Pydantic schemas for hint gating, integrity sessions and helper utilities."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Type, TypeVar

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

__all__ = [
    "LocalizedText",
    "HintLedgerRecord",
    "HintRequest",
    "HintResponse",
    "HintRecord",
    "AIHintResult",
    "GuardrailVerdict",
    "GeneratorRequest",
    "GeneratorResponse",
    "QuizSettings",
    "IntegrityEvent",
    "IntegritySession",
    "EnvironmentSignal",
    "ReviewDecision",
    "parse_json_safe",
]

HintLevel = Literal[1, 2, 3]
HintSource = Literal["ai", "template"]
DenialReason = Literal["exam_mode", "no_tokens", "show_work_first"]
ViolationKind = Literal["direct_answer", "full_solution", "step_complete"]
Language = Literal["id", "en"]
BonusReason = Literal["discussion", "peer_help", "streak"]
Severity = Literal["low", "medium", "high"]
ReviewStatus = Literal["pending", "approved", "flagged", "dismissed"]
IntegrityEventType = Literal[
    "exam_started",
    "exam_ended",
    "tab_switch",
    "window_blur",
    "copy_attempt",
    "paste_attempt",
    "screenshot_attempt",
    "rapid_answer",
    "unusual_timing",
    "ai_spike",
    "browser_devtools",
]
SignalKind = Literal["visibility_change", "window_blur", "copy", "paste", "keydown", "context_menu"]

LEDGER_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalizedText(BaseModel):
    id: str = Field(description="Indonesian text.")
    en: str = Field(description="English text.")

    def pick(self, language: str) -> str:
        return self.en if language == "en" else self.id


class HintLedgerRecord(BaseModel):
    """Persisted hint-token balance for one learner.

    Older payloads stored camelCase keys; both spellings load, and missing
    fields fall back to the defaults below.
    """

    schema_version: int = LEDGER_SCHEMA_VERSION
    daily_remaining: int = Field(
        default=10,
        ge=0,
        validation_alias=AliasChoices("daily_remaining", "dailyTokens", "dailyRemaining"),
    )
    bonus_remaining: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("bonus_remaining", "bonusTokens", "bonusRemaining"),
    )
    last_reset_date: date | None = Field(
        default=None,
        validation_alias=AliasChoices("last_reset_date", "lastTokenReset", "lastResetDate"),
    )

    model_config = {
        "extra": "ignore",
        "populate_by_name": True,
    }

    @field_validator("last_reset_date", mode="before")
    @classmethod
    def _parse_legacy_date(cls, value: Any) -> Any:
        # Browser-era payloads used Date.toDateString(), e.g. "Sat Oct 17 2026".
        if isinstance(value, str) and value and not value[0].isdigit():
            try:
                return datetime.strptime(value.strip(), "%a %b %d %Y").date()
            except ValueError:
                return None
        return value

    @property
    def total(self) -> int:
        return self.daily_remaining + self.bonus_remaining


class HintRequest(BaseModel):
    question_id: str
    attempt_count: int = Field(default=0, ge=0)
    user_message: str | None = None
    context: Dict[str, Any] | None = None


class HintResponse(BaseModel):
    allowed: bool
    hint: LocalizedText | None = None
    level: HintLevel = 1
    tokens_remaining: int
    reason: DenialReason | None = None


class HintRecord(BaseModel):
    question_id: str
    level: HintLevel
    hint: LocalizedText
    timestamp: datetime = Field(default_factory=_utcnow)
    source: HintSource

    model_config = {"frozen": True}


class AIHintResult(BaseModel):
    success: bool
    hint: str = ""
    level: HintLevel = 1
    follow_up: str | None = None
    next_step: str | None = None
    tip: str | None = None
    error: str | None = None


class GuardrailVerdict(BaseModel):
    allowed: bool
    rewritten_text: str | None = None
    violation_kind: ViolationKind | None = None


class GeneratorRequest(BaseModel):
    question: str
    subject: str | None = None
    attempt_count: int = Field(default=0, ge=0)
    user_message: str | None = None
    context: Dict[str, Any] | None = None
    language: Language = "id"


class GeneratorResponse(BaseModel):
    success: bool
    hint: str | None = None
    level: int | None = None
    follow_up: str | None = Field(default=None, validation_alias=AliasChoices("follow_up", "followUp"))
    next_step: str | None = Field(default=None, validation_alias=AliasChoices("next_step", "nextStep"))
    tip: str | None = None
    error: str | None = None

    model_config = {"populate_by_name": True}


class GeneratedHintPayload(BaseModel):
    """JSON object the generator is instructed to return."""

    hint: str
    level: int | None = None
    next_step: str | None = Field(default=None, validation_alias=AliasChoices("next_step", "nextStep"))
    tip: str | None = None
    follow_up: str | None = Field(default=None, validation_alias=AliasChoices("follow_up", "followUp"))

    model_config = {"extra": "allow", "populate_by_name": True}


class QuizSettings(BaseModel):
    ai_hints_enabled: bool = True
    ai_hint_limit: int = Field(default=10, ge=0)
    exam_mode: bool = False
    require_reasoning: bool = False
    require_confidence: bool = False
    time_limit: int | None = Field(default=None, description="Time limit in minutes.")
    allow_redo: bool = True
    allow_skip: bool = True
    shuffle_questions: bool = False
    shuffle_options: bool = False


class IntegrityEvent(BaseModel):
    id: str
    type: IntegrityEventType
    timestamp: datetime = Field(default_factory=_utcnow)
    severity: Severity
    details: str | None = None
    question_id: str | None = None

    model_config = {"frozen": True}


class IntegritySession(BaseModel):
    session_id: str
    quiz_id: str
    user_id: str
    start_time: datetime
    end_time: datetime | None = None
    events: List[IntegrityEvent] = Field(default_factory=list)
    tab_switch_count: int = 0
    copy_attempts: int = 0
    rapid_answers: int = 0
    overall_score: int = Field(default=100, ge=0, le=100)


class EnvironmentSignal(BaseModel):
    kind: SignalKind
    hidden: bool = False
    key: str | None = None
    ctrl: bool = False
    meta: bool = False
    shift: bool = False
    question_id: str | None = None


class ReviewDecision(BaseModel):
    session_id: str
    status: ReviewStatus = "pending"
    reviewer_id: str | None = None
    note: str | None = None
    decided_at: datetime = Field(default_factory=_utcnow)


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T], *, allow_trailing: bool = False) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass."""

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:]
    if trailing.strip() and not allow_trailing:
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except (ValidationError, ValueError):
        if first_error:
            raise first_error
        raise
