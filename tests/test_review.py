from datetime import datetime, timedelta, timezone

import db
from engines.integrity_events import EVENT_SEVERITY
from engines.review import ReviewAggregator, score_band, worst_severity
from engines.session_store import SessionStore
from schemas import IntegrityEvent, IntegritySession

BASE = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


def _session(session_id, *, user_id="a", quiz_id="quiz-1", score=100, events=(), days=0):
    return IntegritySession(
        session_id=session_id,
        quiz_id=quiz_id,
        user_id=user_id,
        start_time=BASE + timedelta(days=days),
        end_time=BASE + timedelta(days=days, hours=1),
        events=[
            IntegrityEvent(id=f"{session_id}-{i}", type=t, severity=EVENT_SEVERITY[t])
            for i, t in enumerate(events)
        ],
        overall_score=score,
    )


def _aggregator():
    store = SessionStore(preload=False)
    store.append(_session("s-old", score=60, events=("exam_started", "tab_switch"), days=0))
    store.append(_session("s-new", user_id="b", score=40, events=("exam_started", "browser_devtools"), days=2))
    store.append(_session("s-mid", quiz_id="quiz-2", score=95, events=("exam_started", "window_blur"), days=1))
    return ReviewAggregator(store)


def test_score_band_thresholds():
    assert score_band(100) == "good"
    assert score_band(80) == "good"
    assert score_band(79) == "warning"
    assert score_band(50) == "warning"
    assert score_band(49) == "critical"


def test_worst_severity():
    assert worst_severity(_session("x", events=("window_blur", "copy_attempt", "tab_switch"))) == "high"
    assert worst_severity(_session("y")) is None


def test_list_sessions_sorting(temp_db):
    review = _aggregator()
    by_date = [s.session_id for s in review.list_sessions()]
    assert by_date == ["s-new", "s-mid", "s-old"]
    by_score = [s.session_id for s in review.list_sessions(sort_by="score")]
    assert by_score == ["s-new", "s-old", "s-mid"]


def test_list_sessions_filters(temp_db):
    review = _aggregator()
    assert [s.session_id for s in review.list_sessions(severity="high")] == ["s-new"]
    assert [s.session_id for s in review.list_sessions(severity="medium")] == ["s-old"]
    # every session has exam_started, a low-severity event
    assert len(review.list_sessions(severity="low")) == 3
    assert [s.session_id for s in review.list_sessions(quiz_id="quiz-2")] == ["s-mid"]
    assert [s.session_id for s in review.list_sessions(user_id="b")] == ["s-new"]


def test_decisions_default_to_pending_and_leave_scores_alone(temp_db):
    review = _aggregator()
    assert review.decision_for("s-new").status == "pending"

    decision = review.set_decision("s-new", "flagged", reviewer_id="instructor-1", note="devtools opened")
    assert decision.status == "flagged"
    assert review.decision_for("s-new").reviewer_id == "instructor-1"
    assert review.sessions.get("s-new").overall_score == 40

    review.set_decision("s-new", "approved")
    assert review.decision_for("s-new").status == "approved"
    assert db.list_review_decisions()["s-new"]["status"] == "approved"


def test_decisions_reload_from_store(temp_db):
    review = _aggregator()
    review.set_decision("s-old", "dismissed", note="false alarm")
    reloaded = ReviewAggregator(SessionStore())
    assert reloaded.decision_for("s-old").status == "dismissed"
    assert reloaded.decision_for("s-old").note == "false alarm"


def test_summary_counts(temp_db):
    review = _aggregator()
    review.set_decision("s-new", "flagged")
    summary = review.summary()
    assert summary["total_sessions"] == 3
    assert summary["average_score"] == 65.0
    assert summary["by_status"] == {"pending": 2, "approved": 0, "flagged": 1, "dismissed": 0}
    assert summary["by_band"] == {"good": 1, "warning": 1, "critical": 1}

    empty = review.summary(quiz_id="missing")
    assert empty["total_sessions"] == 0
    assert empty["average_score"] is None
