import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return None


def init():
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS hint_ledgers (
                user_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS hint_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                question_id TEXT NOT NULL,
                level INTEGER NOT NULL CHECK (level IN (1, 2, 3)),
                hint TEXT NOT NULL,
                source TEXT NOT NULL CHECK (source IN ('ai', 'template')),
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_hint_history_user ON hint_history(user_id, id);

            CREATE TABLE IF NOT EXISTS integrity_sessions (
                session_id TEXT PRIMARY KEY,
                quiz_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                overall_score INTEGER NOT NULL,
                payload TEXT NOT NULL,
                stored_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_integrity_sessions_quiz ON integrity_sessions(quiz_id);
            CREATE INDEX IF NOT EXISTS idx_integrity_sessions_user ON integrity_sessions(user_id);

            CREATE TABLE IF NOT EXISTS review_decisions (
                session_id TEXT PRIMARY KEY,
                status TEXT NOT NULL CHECK (status IN ('pending', 'approved', 'flagged', 'dismissed')),
                reviewer_id TEXT,
                note TEXT,
                decided_at TEXT NOT NULL
            );
            """
        )
        con.commit()


# ---------- Hint ledger ----------

def get_hint_ledger(user_id: str) -> Optional[Dict[str, Any]]:
    """Return the raw ledger payload for ``user_id`` or ``None`` if absent."""
    rows = _query("SELECT payload FROM hint_ledgers WHERE user_id = ?", (user_id,))
    if not rows:
        return None
    payload = _decode_json_field(rows[0]["payload"])
    return payload if isinstance(payload, dict) else {}


def save_hint_ledger(user_id: str, payload: Dict[str, Any]) -> None:
    _exec(
        """
        INSERT INTO hint_ledgers (user_id, payload, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            payload = excluded.payload,
            updated_at = excluded.updated_at
        """,
        (user_id, json.dumps(payload, default=str), _now_iso()),
    )


# ---------- Hint history (append-only) ----------

def append_hint_record(user_id: str, record: Dict[str, Any]) -> None:
    timestamp = record.get("timestamp") or _now_iso()
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()
    _exec(
        """
        INSERT INTO hint_history (user_id, question_id, level, hint, source, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            record["question_id"],
            int(record["level"]),
            json.dumps(record["hint"], ensure_ascii=False),
            record["source"],
            timestamp,
        ),
    )


def list_hint_records(user_id: str, limit: Optional[int] = None) -> list[Dict[str, Any]]:
    sql = (
        "SELECT question_id, level, hint, source, created_at FROM hint_history "
        "WHERE user_id = ? ORDER BY id ASC"
    )
    params: list[Any] = [user_id]
    if limit is not None:
        sql = (
            "SELECT * FROM (SELECT id, question_id, level, hint, source, created_at FROM hint_history "
            "WHERE user_id = ? ORDER BY id DESC LIMIT ?) ORDER BY id ASC"
        )
        params.append(int(limit))
    rows = _query(sql, params)
    return [
        {
            "question_id": row["question_id"],
            "level": row["level"],
            "hint": _decode_json_field(row["hint"]) or {},
            "source": row["source"],
            "timestamp": row["created_at"],
        }
        for row in rows
    ]


# ---------- Integrity sessions (write-once) ----------

def save_integrity_session(session: Dict[str, Any]) -> bool:
    """Store a finalized session. Returns ``False`` if the id already exists."""
    cur = _exec(
        """
        INSERT OR IGNORE INTO integrity_sessions
        (session_id, quiz_id, user_id, start_time, end_time, overall_score, payload, stored_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session["session_id"],
            session["quiz_id"],
            session["user_id"],
            str(session["start_time"]),
            str(session["end_time"]) if session.get("end_time") else None,
            int(session["overall_score"]),
            json.dumps(session, default=str, ensure_ascii=False),
            _now_iso(),
        ),
    )
    return cur.rowcount > 0


def list_integrity_sessions(
    quiz_id: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[Dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if quiz_id:
        clauses.append("quiz_id = ?")
        params.append(quiz_id)
    if user_id:
        clauses.append("user_id = ?")
        params.append(user_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    sql = f"SELECT payload FROM integrity_sessions {where} ORDER BY rowid ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    rows = _query(sql, params)
    sessions = []
    for row in rows:
        payload = _decode_json_field(row["payload"])
        if isinstance(payload, dict):
            sessions.append(payload)
    return sessions


def get_integrity_session(session_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT payload FROM integrity_sessions WHERE session_id = ?", (session_id,))
    if not rows:
        return None
    payload = _decode_json_field(rows[0]["payload"])
    return payload if isinstance(payload, dict) else None


# ---------- Review decisions ----------

def upsert_review_decision(
    session_id: str,
    status: str,
    reviewer_id: Optional[str] = None,
    note: Optional[str] = None,
    decided_at: Optional[str] = None,
) -> None:
    _exec(
        """
        INSERT INTO review_decisions (session_id, status, reviewer_id, note, decided_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(session_id) DO UPDATE SET
            status = excluded.status,
            reviewer_id = excluded.reviewer_id,
            note = excluded.note,
            decided_at = excluded.decided_at
        """,
        (session_id, status, reviewer_id, note, decided_at or _now_iso()),
    )


def list_review_decisions() -> Dict[str, Dict[str, Any]]:
    rows = _query("SELECT session_id, status, reviewer_id, note, decided_at FROM review_decisions")
    return {
        row["session_id"]: {
            "session_id": row["session_id"],
            "status": row["status"],
            "reviewer_id": row["reviewer_id"],
            "note": row["note"],
            "decided_at": row["decided_at"],
        }
        for row in rows
    }
