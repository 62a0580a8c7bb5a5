"""Per-learner hint orchestration: gating, token spending and the audit trail."""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

import db
from audit_log import AUDIT_LOGGER_NAME, channel_logger, json_log
from engines.exam_mode import ExamModeGate, TaskMode
from engines.guardrail import ResponseGuardrail
from engines.hint_generator import HintGenerator, HintGeneratorError
from engines.hint_policy import HintLevelPolicy, coerce_level
from engines.request_classifier import RequestClassifier
from engines.token_ledger import TokenLedger, TokenPool
from env_validation import safe_float
from schemas import (
    AIHintResult,
    GeneratorRequest,
    HintLevel,
    HintRecord,
    HintRequest,
    HintResponse,
    HintSource,
    LocalizedText,
    QuizSettings,
)

logger = logging.getLogger(__name__)
_AUDIT_LOGGER = channel_logger(AUDIT_LOGGER_NAME)

# Generator-path history entries are keyed by the question text, trimmed.
QUESTION_KEY_LENGTH = 50

# Upper bound on one generator call including the client's own retries.
DEFAULT_GENERATOR_DEADLINE = 45.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HintOrchestrator:
    """Serve hint requests for one learner.

    Rules run in a fixed order: exam mode denies, an empty balance denies, an
    answer-seeking message gets a free Socratic deflection, and everything
    else spends exactly one token (bonus first) and appends one
    :class:`HintRecord`. Denials and deflections leave the ledger and the
    history untouched.
    """

    def __init__(
        self,
        user_id: str,
        *,
        ledger: Optional[TokenLedger] = None,
        gate: Optional[ExamModeGate] = None,
        generator: Optional[HintGenerator] = None,
        classifier: Optional[RequestClassifier] = None,
        policy: Optional[HintLevelPolicy] = None,
        guardrail: Optional[ResponseGuardrail] = None,
        store: ModuleType = db,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
        generator_deadline: Optional[float] = None,
    ) -> None:
        self.user_id = user_id
        self._store = store
        self.generator_deadline = (
            generator_deadline
            if generator_deadline is not None
            else safe_float("HINT_LLM_DEADLINE", DEFAULT_GENERATOR_DEADLINE)
        )
        self.ledger = ledger or TokenLedger(user_id, store=store)
        self.gate = gate or ExamModeGate()
        self.generator = generator
        self.classifier = classifier or RequestClassifier()
        self.policy = policy or HintLevelPolicy(rng=rng)
        self.guardrail = guardrail or ResponseGuardrail()
        self._clock = clock
        self._history: List[HintRecord] = self._load_history()
        self._inflight = asyncio.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def history(self) -> tuple[HintRecord, ...]:
        return tuple(self._history)

    @property
    def exam_mode(self) -> bool:
        return self.gate.active

    @property
    def is_locked(self) -> bool:
        return self.gate.active or self.ledger.total <= 0

    def status(self) -> Dict[str, Any]:
        balance = self.ledger.snapshot()
        return {
            "user_id": self.user_id,
            "daily_tokens": balance.daily_remaining,
            "bonus_tokens": balance.bonus_remaining,
            "total_tokens": balance.total,
            "exam_mode": self.gate.active,
            "is_locked": self.gate.active or balance.total <= 0,
            "panel_open": self.gate.panel_open,
            "hints_used": len(self._history),
        }

    def _load_history(self) -> List[HintRecord]:
        try:
            rows = self._store.list_hint_records(self.user_id)
        except Exception:
            logger.exception("Failed to load hint history for %s", self.user_id)
            return []
        records: List[HintRecord] = []
        for row in rows:
            try:
                records.append(HintRecord.model_validate(row))
            except ValidationError as exc:
                logger.warning("Skipping unreadable hint record for %s: %s", self.user_id, exc)
        return records

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------
    def _denial_reason(self) -> Optional[str]:
        if self.gate.active:
            return "exam_mode"
        if self.ledger.total <= 0:
            return "no_tokens"
        return None

    def _spend(self, question_id: str, level: HintLevel, hint: LocalizedText, source: HintSource) -> bool:
        """Consume one token and record the hint; ``False`` when none was left."""
        pool = self.ledger.consume()
        if pool is None:
            return False
        self._record(question_id, level, hint, source, pool)
        return True

    def _record(
        self,
        question_id: str,
        level: HintLevel,
        hint: LocalizedText,
        source: HintSource,
        pool: TokenPool,
    ) -> None:
        record = HintRecord(
            question_id=question_id,
            level=level,
            hint=hint,
            timestamp=self._clock(),
            source=source,
        )
        self._history.append(record)
        try:
            self._store.append_hint_record(self.user_id, record.model_dump(mode="json"))
        except Exception:
            logger.exception("Failed to persist hint record for %s", self.user_id)
        json_log(
            _AUDIT_LOGGER,
            "hint_served",
            {
                "user_id": self.user_id,
                "question_id": question_id,
                "level": level,
                "source": source,
                "token_pool": pool,
                "tokens_remaining": self.ledger.total,
            },
        )

    def _log_decision(self, event: str, **payload: Any) -> None:
        json_log(_AUDIT_LOGGER, event, {"user_id": self.user_id, **payload})

    # ------------------------------------------------------------------
    # Template path
    # ------------------------------------------------------------------
    def request_hint(self, request: HintRequest) -> HintResponse:
        reason = self._denial_reason()
        if reason is not None:
            self._log_decision("hint_denied", reason=reason, question_id=request.question_id)
            return HintResponse(
                allowed=False,
                level=1,
                tokens_remaining=self.ledger.total,
                reason=reason,
            )

        if self.classifier.is_answer_request(request.user_message):
            self._log_decision("hint_deflected", question_id=request.question_id)
            return HintResponse(
                allowed=True,
                hint=self.policy.deflection(),
                level=1,
                tokens_remaining=self.ledger.total,
                reason="show_work_first",
            )

        level = self.policy.level_for(request.attempt_count)
        hint = self.policy.template_for(level)
        if not self._spend(request.question_id, level, hint, "template"):
            # Lost the last token to a concurrent request after the gate check.
            self._log_decision("hint_denied", reason="no_tokens", question_id=request.question_id)
            return HintResponse(allowed=False, level=1, tokens_remaining=0, reason="no_tokens")
        return HintResponse(
            allowed=True,
            hint=hint,
            level=level,
            tokens_remaining=self.ledger.total,
        )

    # ------------------------------------------------------------------
    # Generator path
    # ------------------------------------------------------------------
    async def request_ai_hint(
        self,
        question: str,
        subject: Optional[str],
        attempt_count: int,
        user_message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        language: str = "id",
    ) -> AIHintResult:
        question_id = question[:QUESTION_KEY_LENGTH]
        reason = self._denial_reason()
        if reason is not None:
            self._log_decision("hint_denied", reason=reason, question_id=question_id, path="ai")
            return AIHintResult(success=False, hint="", level=1, error=reason)

        if self.classifier.is_answer_request(user_message):
            self._log_decision("hint_deflected", question_id=question_id, path="ai")
            return AIHintResult(success=True, hint=self.policy.deflection().pick(language), level=1)

        if self._inflight.locked():
            self._log_decision("hint_dropped", question_id=question_id, reason="request_in_flight")
            return AIHintResult(success=False, hint="", level=1, error="request_in_flight")

        async with self._inflight:
            # The token is reserved before the generator call so a concurrent
            # template request cannot spend it while this one is suspended.
            pool = self.ledger.consume()
            if pool is None:
                self._log_decision("hint_denied", reason="no_tokens", question_id=question_id, path="ai")
                return AIHintResult(success=False, hint="", level=1, error="no_tokens")

            computed_level = self.policy.level_for(attempt_count)
            request = GeneratorRequest(
                question=question,
                subject=subject,
                attempt_count=attempt_count,
                user_message=user_message,
                context=context,
                language="en" if language == "en" else "id",
            )
            try:
                if self.generator is None:
                    raise HintGeneratorError("No hint generator configured")
                response = await asyncio.wait_for(
                    self.generator.generate(request),
                    timeout=self.generator_deadline,
                )
                if not response.success or not (response.hint or "").strip():
                    raise HintGeneratorError(response.error or "Generator returned no hint")
            except asyncio.TimeoutError:
                logger.warning(
                    "AI hint for %s exceeded %.1fs, using template fallback",
                    self.user_id,
                    self.generator_deadline,
                )
                return self._fallback(question_id, computed_level, language, pool)
            except Exception as exc:
                # Any collaborator failure degrades to the template pool.
                logger.warning("AI hint failed for %s, using template fallback: %s", self.user_id, exc)
                return self._fallback(question_id, computed_level, language, pool)

            text, verdict = self.guardrail.sanitize(response.hint or "", language)
            if not verdict.allowed:
                self._log_decision(
                    "guardrail_violation",
                    question_id=question_id,
                    violation_kind=verdict.violation_kind,
                    rewritten=verdict.rewritten_text is not None,
                )
            level = coerce_level(response.level, computed_level)
            self._record(question_id, level, LocalizedText(id=text, en=text), "ai", pool)
            return AIHintResult(
                success=True,
                hint=text,
                level=level,
                follow_up=response.follow_up,
                next_step=response.next_step,
                tip=response.tip,
            )

    def _fallback(self, question_id: str, level: HintLevel, language: str, pool: TokenPool) -> AIHintResult:
        hint = self.policy.template_for(level)
        self._record(question_id, level, hint, "template", pool)
        return AIHintResult(success=True, hint=hint.pick(language), level=level)

    # ------------------------------------------------------------------
    # Consumer operations
    # ------------------------------------------------------------------
    def set_exam_mode(self, active: bool) -> None:
        self.gate.set(active)
        self._log_decision("exam_mode_changed", active=self.gate.active)

    def toggle_panel(self) -> bool:
        return self.gate.toggle_panel()

    def check_task_mode(self, settings: QuizSettings) -> TaskMode:
        return self.gate.check_task_mode(settings)

    def award_bonus_token(self, reason: str) -> int:
        balance = self.ledger.award_bonus(reason)
        self._log_decision("bonus_token_awarded", reason=reason, bonus_tokens=balance)
        return balance

    def reset_daily_tokens(self) -> None:
        self.ledger.reset_daily()
        self._log_decision("daily_tokens_reset", daily_tokens=self.ledger.daily_remaining)
