"""Tests for SessionState serialization and expiry bookkeeping."""

from datetime import date, timedelta

from task_guide.core.session import (
    MIN_RETENTION_DAYS,
    SessionState,
    SkipReason,
    StepCompletion,
    WorkflowStatus,
)

from tests.unit.workflow_fixtures import NOW


def _session(**variables):
    return SessionState.new("passport_renewal", 1, user_id="u1", now=NOW, variables=variables)


class TestSessionState:
    def test_new_session_defaults(self):
        session = _session()
        assert session.status == WorkflowStatus.NOT_STARTED
        assert session.version == 0
        assert session.expires_at == NOW + timedelta(days=MIN_RETENTION_DAYS)
        assert len(session.session_id) == 32

    def test_retention_has_a_floor(self):
        session = SessionState.new("t", 1, retention_days=1, now=NOW)
        assert session.retention == timedelta(days=MIN_RETENTION_DAYS)

    def test_json_round_trip_keeps_types(self):
        """Dates and sets survive persistence without turning into strings or lists."""
        session = _session(born=date(1990, 4, 2), documents=["passport", "visa"], age=35)
        session.history.append(StepCompletion(step_id="a", timestamp=NOW, input_value=date(2025, 1, 9)))
        session.history.append(StepCompletion(
            step_id="b", timestamp=NOW, skipped=True, skip_reason=SkipReason.CONDITION_FALSE,
        ))

        restored = SessionState.from_json(session.to_json())

        assert restored == session
        assert restored.context.get("born") == date(1990, 4, 2)
        assert restored.context.get("documents") == frozenset({"passport", "visa"})
        assert restored.history[0].input_value == date(2025, 1, 9)
        assert restored.history[1].skip_reason == SkipReason.CONDITION_FALSE

    def test_touch_slides_expiry(self):
        session = _session()
        later = NOW + timedelta(days=10)
        session.touch(later)
        assert session.last_accessed_at == later
        assert session.expires_at == later + timedelta(days=MIN_RETENTION_DAYS)
        assert not session.is_expired(later)
        assert session.is_expired(session.expires_at)

    def test_history_queries(self):
        session = _session()
        session.history.append(StepCompletion(step_id="a", timestamp=NOW))
        session.history.append(StepCompletion(
            step_id="b", timestamp=NOW, skipped=True, skip_reason=SkipReason.NOT_CHOSEN,
        ))
        assert session.completed_step_ids() == ["a"]
        assert session.skipped_step_ids() == ["b"]
        assert session.finished_step_ids() == {"a", "b"}

    def test_merged_none_removes(self):
        session = _session(a=1, b="x")
        assert session.context.merged({"a": None, "c": ["z"]}) == {"b": "x", "c": frozenset({"z"})}

    def test_summary(self):
        summary = _session().summary()
        assert summary.user_id == "u1"
        assert summary.task_type == "passport_renewal"
        assert summary.status == WorkflowStatus.NOT_STARTED
