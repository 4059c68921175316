from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from quest.models import (
    CompletionRequest, DataCompletion, DirectCompletion, TasksAppCompletion,
    UserProgress, caldav_priority, coerce_priority, to_completion_event,
)

RECEIVED = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def parse(payload: dict):
    return CompletionRequest.model_validate(payload).root


class TestPriority:
    def test_caldav_scale(self):
        assert [caldav_priority(n) for n in range(10)] == [
            "medium", "high", "high", "high", "medium", "medium", "medium", "low", "low", "low",
        ]

    def test_words_and_numbers(self):
        assert coerce_priority("HIGH") == "high"
        assert coerce_priority("2") == "high"
        assert coerce_priority(8) == "low"
        assert coerce_priority(None) == "medium"

    def test_rejects_garbage(self):
        for bad in ("urgent", 12, True):
            with pytest.raises(ValueError):
                coerce_priority(bad)


class TestCompletionUnion:
    def test_tasks_app(self):
        payload = parse({
            "kind": "tasks_app",
            "task": {"id": 42, "uid": "alice", "summary": "Water plants", "priority": 1,
                     "completed": "2026-03-01T08:30:00Z"},
        })
        assert isinstance(payload, TasksAppCompletion)
        event = to_completion_event(payload, RECEIVED)
        assert event.task_id == "42"
        assert event.user_id == "alice"
        assert event.task_title == "Water plants"
        assert event.priority == "high"
        assert event.occurred_at == datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)

    def test_direct_defaults(self):
        payload = parse({"kind": "direct", "task_id": "t1", "user_id": "bob"})
        assert isinstance(payload, DirectCompletion)
        event = to_completion_event(payload, RECEIVED)
        assert event.task_title == "Completed Task"
        assert event.priority == "medium"
        assert event.occurred_at == RECEIVED

    def test_direct_naive_time_is_utc(self):
        payload = parse({"kind": "direct", "task_id": "t1", "user_id": "bob",
                         "priority": "low", "occurred_at": "2026-03-01T22:00:00"})
        event = to_completion_event(payload, RECEIVED)
        assert event.occurred_at.tzinfo is not None
        assert event.priority == "low"

    def test_data_shape(self):
        payload = parse({"kind": "data", "data": {"taskId": "t9", "userId": "carol", "priority": 9}})
        assert isinstance(payload, DataCompletion)
        event = to_completion_event(payload, RECEIVED)
        assert (event.task_id, event.user_id, event.priority) == ("t9", "carol", "low")
        assert event.occurred_at == RECEIVED

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            parse({"kind": "email", "task_id": "t1", "user_id": "bob"})

    def test_missing_user_rejected(self):
        with pytest.raises(ValidationError):
            parse({"kind": "direct", "task_id": "t1"})

    def test_bad_priority_rejected(self):
        with pytest.raises(ValidationError):
            parse({"kind": "direct", "task_id": "t1", "user_id": "bob", "priority": "urgent"})

    def test_extra_fields_ignored(self):
        payload = parse({"kind": "direct", "task_id": "t1", "user_id": "bob", "surprise": 1})
        assert payload.task_id == "t1"


class TestUserProgress:
    def test_missing_row_is_zero_state(self):
        p = UserProgress.from_row("u1", None)
        assert (p.lifetime_xp, p.level, p.current_streak, p.version) == (0, 1, 0, 0)
        assert p.last_completion_at is None

    def test_row_round_trip(self):
        p = UserProgress.from_row("u1", {
            "lifetime_xp": 300, "level": 3, "current_streak": 2, "longest_streak": 5,
            "last_completion_at": "2026-03-01T10:00:00+00:00", "total_tasks": 20, "version": 7,
        })
        assert p.version == 7
        row = p.to_row()
        assert row["last_completion_at"] == "2026-03-01T10:00:00+00:00"
        assert "version" not in row
