"""Test cases for db operations."""

import sqlite3

import pytest

import db


def _record(question_id, level=1, source="template"):
    return {
        "question_id": question_id,
        "level": level,
        "hint": {"id": "Coba lagi", "en": "Try again"},
        "source": source,
        "timestamp": "2026-10-17T08:00:00+00:00",
    }


def test_hint_history_is_append_only_and_ordered(temp_db):
    for idx in range(4):
        db.append_hint_record("learner-1", _record(f"q{idx}"))
    db.append_hint_record("learner-2", _record("other"))

    records = db.list_hint_records("learner-1")
    assert [r["question_id"] for r in records] == ["q0", "q1", "q2", "q3"]
    assert records[0]["hint"] == {"id": "Coba lagi", "en": "Try again"}

    latest = db.list_hint_records("learner-1", limit=2)
    assert [r["question_id"] for r in latest] == ["q2", "q3"]


def test_hint_history_rejects_invalid_level(temp_db):
    with pytest.raises(sqlite3.IntegrityError):
        db.append_hint_record("learner-1", _record("q1", level=5))


def test_integrity_sessions_are_write_once(temp_db):
    session = {
        "session_id": "session-1",
        "quiz_id": "quiz-1",
        "user_id": "learner-1",
        "start_time": "2026-10-17T08:00:00+00:00",
        "end_time": "2026-10-17T09:00:00+00:00",
        "overall_score": 90,
        "events": [],
    }
    assert db.save_integrity_session(session) is True
    assert db.save_integrity_session({**session, "overall_score": 10}) is False
    assert db.get_integrity_session("session-1")["overall_score"] == 90
    assert db.list_integrity_sessions(quiz_id="quiz-1", user_id="learner-1")[0]["session_id"] == "session-1"
    assert db.list_integrity_sessions(user_id="nobody") == []


def test_review_decision_upsert(temp_db):
    db.upsert_review_decision("session-1", "flagged", reviewer_id="t1")
    db.upsert_review_decision("session-1", "approved", note="ok")
    decisions = db.list_review_decisions()
    assert decisions["session-1"]["status"] == "approved"
    assert decisions["session-1"]["reviewer_id"] is None
    assert decisions["session-1"]["note"] == "ok"


def test_integrity_session_listing_is_unbounded_by_default(temp_db):
    for idx in range(1005):
        db.save_integrity_session(
            {
                "session_id": f"session-{idx}",
                "quiz_id": "quiz-1",
                "user_id": "learner-1",
                "start_time": "2026-10-17T08:00:00+00:00",
                "overall_score": 100,
                "events": [],
            }
        )
    assert len(db.list_integrity_sessions()) == 1005
    assert [s["session_id"] for s in db.list_integrity_sessions(limit=2)] == ["session-0", "session-1"]


def test_close_all_releases_idle_connections(temp_db):
    db.list_review_decisions()
    assert db._pool._created_connections >= 1
    db._pool.close_all()
    assert db._pool._created_connections == 0
    # the pool reopens on demand
    assert db.list_review_decisions() == {}
