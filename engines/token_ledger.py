"""Per-learner hint-token balance with a calendar-day reset."""

from __future__ import annotations

import logging
import threading
from datetime import date
from types import ModuleType
from typing import Callable, Literal, Optional

from pydantic import ValidationError

import db
from env_validation import optional_int, safe_int
from schemas import HintLedgerRecord

logger = logging.getLogger(__name__)

DEFAULT_DAILY_TOKENS = 10

TokenPool = Literal["bonus", "daily"]


class TokenLedger:
    """Track the daily and bonus hint tokens of one learner.

    ``daily_remaining`` is restored to the allotment whenever the stored reset
    date differs from today; ``bonus_remaining`` only changes through awards
    and consumption. Every mutation is written through to the store, and a
    failing store never invalidates the in-memory balance.
    """

    def __init__(
        self,
        user_id: str,
        *,
        daily_allotment: Optional[int] = None,
        bonus_cap: Optional[int] = None,
        store: ModuleType = db,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.user_id = user_id
        self.daily_allotment = (
            daily_allotment
            if daily_allotment is not None
            else safe_int("HINT_DAILY_TOKENS", DEFAULT_DAILY_TOKENS)
        )
        self.bonus_cap = bonus_cap if bonus_cap is not None else optional_int("HINT_BONUS_TOKEN_CAP")
        self._store = store
        self._clock = clock
        # Reentrant: every public method rolls the day over while holding it.
        self._lock = threading.RLock()
        self._record = self._load()
        self._roll_day()

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------
    def _fresh_record(self) -> HintLedgerRecord:
        return HintLedgerRecord(
            daily_remaining=self.daily_allotment,
            bonus_remaining=0,
            last_reset_date=self._clock(),
        )

    def _load(self) -> HintLedgerRecord:
        try:
            raw = self._store.get_hint_ledger(self.user_id)
        except Exception:
            logger.exception("Failed to load hint ledger for %s; starting fresh", self.user_id)
            return self._fresh_record()

        if raw is None:
            record = self._fresh_record()
            self._record = record
            self._persist()
            return record

        try:
            return HintLedgerRecord.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Discarding unreadable hint ledger for %s: %s", self.user_id, exc)
            return self._fresh_record()

    def _persist(self) -> None:
        try:
            self._store.save_hint_ledger(self.user_id, self._record.model_dump(mode="json"))
        except Exception:
            logger.exception("Failed to persist hint ledger for %s", self.user_id)

    def _roll_day(self) -> None:
        with self._lock:
            today = self._clock()
            if self._record.last_reset_date == today:
                return
            logger.info(
                "Daily hint tokens reset for %s (last reset %s)",
                self.user_id,
                self._record.last_reset_date,
            )
            self._record = self._record.model_copy(
                update={"daily_remaining": self.daily_allotment, "last_reset_date": today}
            )
            self._persist()

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------
    @property
    def daily_remaining(self) -> int:
        return self.snapshot().daily_remaining

    @property
    def bonus_remaining(self) -> int:
        return self.snapshot().bonus_remaining

    @property
    def total(self) -> int:
        return self.snapshot().total

    def snapshot(self) -> HintLedgerRecord:
        with self._lock:
            self._roll_day()
            return self._record.model_copy()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def consume(self) -> Optional[TokenPool]:
        """Spend one token, bonus first. Returns the pool used or ``None``."""
        with self._lock:
            self._roll_day()
            record = self._record
            if record.total <= 0:
                return None
            if record.bonus_remaining > 0:
                self._record = record.model_copy(update={"bonus_remaining": record.bonus_remaining - 1})
                pool: TokenPool = "bonus"
            else:
                self._record = record.model_copy(update={"daily_remaining": record.daily_remaining - 1})
                pool = "daily"
            self._persist()
            return pool

    def award_bonus(self, reason: str) -> int:
        """Add one bonus token and return the new bonus balance."""
        with self._lock:
            self._roll_day()
            current = self._record.bonus_remaining
            if self.bonus_cap is not None and current >= self.bonus_cap:
                logger.info(
                    "Bonus hint token for %s (%s) ignored; cap of %d reached",
                    self.user_id,
                    reason,
                    self.bonus_cap,
                )
                return current
            self._record = self._record.model_copy(update={"bonus_remaining": current + 1})
            self._persist()
        logger.info("Bonus hint token awarded to %s for: %s", self.user_id, reason)
        return current + 1

    def reset_daily(self) -> None:
        with self._lock:
            self._record = self._record.model_copy(
                update={"daily_remaining": self.daily_allotment, "last_reset_date": self._clock()}
            )
            self._persist()
