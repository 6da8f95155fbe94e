import unittest

import pytest

from tsk.core.errors import CorruptDataError
from tsk.core.schema import migrate_task, parse_persisted_tasks, validate_record


class TestMigration(unittest.TestCase):
    """古い形式のレコードにはデフォルト値が補われる"""

    def test_legacy_record_gets_defaults(self) -> None:
        legacy = {
            "id": "t1",
            "title": "古いタスク",
            "description": "",
            "status": "todo",
            "priority": "high",
            "project": None,
            "tags": ["a"],
            "dueDate": None,
            "createdAt": "2025-01-01T00:00:00.000Z",
            "updatedAt": "2025-01-01T00:00:00.000Z",
            "completedAt": None,
            "order": 3,
        }
        (t,) = parse_persisted_tasks([legacy])
        assert t.id == "t1"
        assert t.priority == "high"
        assert t.order == 3
        assert t.parent_id is None
        assert t.subtask_ids == []
        assert t.blocked_by == []
        assert t.recurrence is None
        assert t.estimate_minutes is None
        assert t.actual_minutes is None
        assert t.notes == []
        assert t.external_id is None
        assert t.external_source is None

    def test_minimal_record(self) -> None:
        t = migrate_task({"id": "x", "title": "only title"})
        assert t.status == "todo"
        assert t.priority == "none"
        assert t.description == ""
        assert t.created_at
        assert t.updated_at

    def test_recurrence_is_restored(self) -> None:
        (t,) = parse_persisted_tasks(
            [{"id": "r", "title": "毎月", "recurrence": {"frequency": "monthly", "interval": 1, "dayOfMonth": 31}}],
        )
        assert t.recurrence is not None
        assert t.recurrence.frequency == "monthly"
        assert t.recurrence.day_of_month == 31


class TestValidation(unittest.TestCase):
    def test_not_a_list(self) -> None:
        with pytest.raises(CorruptDataError):
            parse_persisted_tasks({"id": "x"})

    def test_non_object_entry(self) -> None:
        with pytest.raises(CorruptDataError):
            parse_persisted_tasks(["x"])

    def test_bad_status(self) -> None:
        with pytest.raises(CorruptDataError, match="status"):
            validate_record(0, {"id": "x", "title": "t", "status": "waiting"})

    def test_bad_tags(self) -> None:
        with pytest.raises(CorruptDataError, match="tags"):
            validate_record(0, {"id": "x", "title": "t", "tags": "a,b"})

    def test_bad_recurrence_interval(self) -> None:
        with pytest.raises(CorruptDataError, match="interval"):
            validate_record(0, {"id": "x", "title": "t", "recurrence": {"frequency": "daily", "interval": 0}})

    def test_bad_note_source(self) -> None:
        note = {"id": "n", "content": "c", "createdAt": "2025-01-01T00:00:00.000Z", "source": "robot"}
        with pytest.raises(CorruptDataError, match="notes.source"):
            validate_record(0, {"id": "x", "title": "t", "notes": [note]})

    def test_bool_is_not_int(self) -> None:
        with pytest.raises(CorruptDataError, match="order"):
            validate_record(0, {"id": "x", "title": "t", "order": True})


if __name__ == "__main__":
    unittest.main()
