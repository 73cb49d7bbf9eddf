"""Tests for session, feedback and agent-turn records."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from phaseloop.protocol.models import (
    AgentTurn,
    Checkpoint,
    ErrorRecord,
    FeedbackAttachment,
    FeedbackItem,
    Phase,
    SessionState,
)


class TestSessionState:
    def test_fresh_defaults(self) -> None:
        s = SessionState(goal="g", max_iterations=12)
        assert s.phase == Phase.PLANNING
        assert s.iteration == 0
        assert s.session_handle is None
        assert s.errors == []
        assert s.metrics.total_operations == 0

    def test_to_dict_uses_plain_phase_strings(self) -> None:
        s = SessionState(goal="g", max_iterations=3, phase=Phase.ERROR, previous_phase=Phase.TESTING)
        data = s.to_dict()
        assert data["phase"] == "error"
        assert data["previous_phase"] == "testing"
        assert data["metrics"] == {"total_operations": 0, "successful_operations": 0, "failed_operations": 0}

    def test_from_dict_fills_missing_fields(self) -> None:
        s = SessionState.from_dict({"phase": "testing", "iteration": 4}, goal="new goal", max_iterations=12)
        assert s.goal == "new goal"
        assert s.phase == Phase.TESTING
        assert s.iteration == 4
        assert s.max_iterations == 12
        assert s.errors == []
        assert s.metrics.failed_operations == 0

    def test_from_dict_goal_always_from_current_run(self) -> None:
        s = SessionState.from_dict({"goal": "old goal"}, goal="new goal", max_iterations=5)
        assert s.goal == "new goal"

    def test_from_dict_unknown_phase_falls_back_to_planning(self) -> None:
        s = SessionState.from_dict({"phase": "deploying"}, goal="g", max_iterations=5)
        assert s.phase == Phase.PLANNING

    def test_from_dict_accepts_legacy_error_key(self) -> None:
        raw = {"errors": [{"timestamp": "t", "phase": "testing", "error": "boom"}, "junk"]}
        s = SessionState.from_dict(raw, goal="g", max_iterations=5)
        assert len(s.errors) == 1
        assert s.errors[0].message == "boom"
        assert s.errors[0].recovered is False

    def test_round_trip_preserves_errors_and_metrics(self) -> None:
        s = SessionState(goal="g", max_iterations=5, iteration=2, session_handle="abc")
        s.errors.append(ErrorRecord(timestamp="t", phase="implementation", message="x", recovery_attempt=2))
        s.metrics.total_operations = 3
        restored = SessionState.from_dict(s.to_dict(), goal="g", max_iterations=5)
        assert restored == s

    def test_uptime_ms(self) -> None:
        start = datetime(2024, 1, 1, tzinfo=UTC)
        s = SessionState(goal="g", max_iterations=1, start_time=start.isoformat())
        assert s.uptime_ms(start + timedelta(minutes=2, seconds=5)) == 125_000


class TestFeedbackItem:
    def test_dict_round_trip_with_attachments(self) -> None:
        item = FeedbackItem(
            id="1",
            timestamp="2024-01-01T00:00:00+00:00",
            author_tag="alice",
            content="use postgres",
            attachments=(FeedbackAttachment(name="schema.sql", url="https://x/schema.sql"),),
        )
        assert FeedbackItem.from_dict(item.to_dict()) == item

    def test_from_dict_tolerates_bad_attachments(self) -> None:
        item = FeedbackItem.from_dict({"content": "hi", "attachments": "nope"})
        assert item.attachments == ()
        assert item.author_tag == "unknown"


class TestAgentTurn:
    def test_from_result_record(self) -> None:
        turn = AgentTurn.from_record({"type": "result", "result": "ok", "is_error": False, "session_id": "s1"})
        assert turn.kind == "result"
        assert turn.result_text == "ok"
        assert turn.session_handle == "s1"
        assert turn.is_error is False

    def test_message_becomes_raw_content(self) -> None:
        turn = AgentTurn.from_record({"type": "assistant", "message": {"content": []}})
        assert turn.raw_content == {"content": []}
        assert turn.result_text is None
        assert turn.session_handle is None


def test_checkpoint_merges_session_fields() -> None:
    s = SessionState(goal="g", max_iterations=2, iteration=1)
    data = Checkpoint(session=s.to_dict(), timestamp="now", status="success", uptime_ms=10).to_dict()
    assert data["iteration"] == 1
    assert data["status"] == "success"
    assert data["uptime_ms"] == 10
