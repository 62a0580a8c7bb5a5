"""Global store of finalized integrity sessions."""

from __future__ import annotations

import logging
from types import ModuleType
from typing import Dict, List, Optional

from pydantic import ValidationError

import db
from schemas import IntegritySession

logger = logging.getLogger(__name__)


class SessionStore:
    """Write-once archive of finalized sessions, mirrored to SQLite.

    The in-memory list is authoritative for the process; SQLite failures are
    logged and do not lose a session already accepted here. Callers always get
    deep copies, so nothing outside the store can alter an archived session.
    """

    def __init__(self, store: ModuleType = db, preload: bool = True) -> None:
        self._store = store
        self._sessions: List[IntegritySession] = []
        self._index: Dict[str, IntegritySession] = {}
        if preload:
            self.reload()

    def reload(self) -> None:
        try:
            rows = self._store.list_integrity_sessions()
        except Exception:
            logger.exception("Failed to load integrity sessions; keeping in-memory copy")
            return
        sessions: List[IntegritySession] = []
        for row in rows:
            try:
                sessions.append(IntegritySession.model_validate(row))
            except ValidationError as exc:
                logger.warning("Skipping unreadable integrity session %s: %s", row.get("session_id"), exc)
        self._sessions = sessions
        self._index = {session.session_id: session for session in sessions}

    def append(self, session: IntegritySession) -> bool:
        if session.session_id in self._index:
            logger.warning("Session %s already archived; ignoring", session.session_id)
            return False
        frozen = session.model_copy(deep=True)
        self._sessions.append(frozen)
        self._index[frozen.session_id] = frozen
        try:
            self._store.save_integrity_session(frozen.model_dump(mode="json"))
        except Exception:
            logger.exception("Failed to persist integrity session %s", frozen.session_id)
        return True

    def get(self, session_id: str) -> Optional[IntegritySession]:
        session = self._index.get(session_id)
        return session.model_copy(deep=True) if session else None

    def all(self) -> List[IntegritySession]:
        return [session.model_copy(deep=True) for session in self._sessions]

    def sessions_by_quiz(self, quiz_id: str) -> List[IntegritySession]:
        return [s.model_copy(deep=True) for s in self._sessions if s.quiz_id == quiz_id]

    def sessions_by_student(self, user_id: str) -> List[IntegritySession]:
        return [s.model_copy(deep=True) for s in self._sessions if s.user_id == user_id]

    def __len__(self) -> int:
        return len(self._sessions)
