"""Validation and migration of persisted task records.

Older task files (before subtasks, dependencies, recurrence, time tracking,
notes and sync fields existed) lack those keys; they are filled with defaults
here so every version of the file stays loadable.
"""

from typing import Any

from tsk.core.errors import CorruptDataError
from tsk.core.models import (
    EXTERNAL_SOURCES,
    FREQUENCIES,
    NOTE_SOURCES,
    PRIORITIES,
    STATUSES,
    RecurrenceRule,
    Task,
    TaskNote,
    clip_title,
)
from tsk.util.ids import gen_task_id
from tsk.util.time import now_iso

_STR_FIELDS = ("id", "title", "description", "createdAt", "updatedAt")
_NULLABLE_STR_FIELDS = ("project", "dueDate", "completedAt", "parentId", "externalId")
_STR_LIST_FIELDS = ("tags", "subtaskIds", "blockedBy")
_NULLABLE_INT_FIELDS = ("estimateMinutes", "actualMinutes")


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _fail(index: int, key: str, reason: str) -> CorruptDataError:
    return CorruptDataError(f"task[{index}].{key}: {reason}")


def _check_str_list(v: Any) -> bool:
    return isinstance(v, list) and all(isinstance(x, str) for x in v)


def _validate_note(index: int, note: Any) -> None:
    if not isinstance(note, dict):
        raise _fail(index, "notes", "expected object")
    if not isinstance(note.get("id"), str) or not note["id"]:
        raise _fail(index, "notes.id", "expected non-empty string")
    if not isinstance(note.get("content"), str):
        raise _fail(index, "notes.content", "expected string")
    if not isinstance(note.get("createdAt"), str):
        raise _fail(index, "notes.createdAt", "expected string")
    if note.get("source") not in NOTE_SOURCES:
        raise _fail(index, "notes.source", f"expected one of {NOTE_SOURCES}")


def _validate_recurrence(index: int, rec: Any) -> None:
    if not isinstance(rec, dict):
        raise _fail(index, "recurrence", "expected object")
    if rec.get("frequency") not in FREQUENCIES:
        raise _fail(index, "recurrence.frequency", f"expected one of {FREQUENCIES}")
    interval = rec.get("interval")
    if not _is_int(interval) or interval < 1:
        raise _fail(index, "recurrence.interval", "expected positive integer")
    days = rec.get("daysOfWeek")
    if days is not None and not (isinstance(days, list) and all(_is_int(x) and 0 <= x <= 6 for x in days)):
        raise _fail(index, "recurrence.daysOfWeek", "expected integers 0..6")
    dom = rec.get("dayOfMonth")
    if dom is not None and not (_is_int(dom) and 1 <= dom <= 31):
        raise _fail(index, "recurrence.dayOfMonth", "expected integer 1..31")
    end = rec.get("endDate")
    if end is not None and not isinstance(end, str):
        raise _fail(index, "recurrence.endDate", "expected string or null")
    nxt = rec.get("nextDue")
    if nxt is not None and not isinstance(nxt, str):
        raise _fail(index, "recurrence.nextDue", "expected string")


def validate_record(index: int, raw: Any) -> None:  # noqa: C901
    """Check the type of every known key present in ``raw``."""
    if not isinstance(raw, dict):
        raise CorruptDataError(f"task[{index}]: expected object")
    for key in _STR_FIELDS:
        if key in raw and not isinstance(raw[key], str):
            raise _fail(index, key, "expected string")
    if "id" in raw and not raw["id"]:
        raise _fail(index, "id", "expected non-empty string")
    for key in _NULLABLE_STR_FIELDS:
        if raw.get(key) is not None and not isinstance(raw[key], str):
            raise _fail(index, key, "expected string or null")
    for key in _STR_LIST_FIELDS:
        if key in raw and not _check_str_list(raw[key]):
            raise _fail(index, key, "expected list of strings")
    for key in _NULLABLE_INT_FIELDS:
        if raw.get(key) is not None and not _is_int(raw[key]):
            raise _fail(index, key, "expected integer or null")
    if "order" in raw and not _is_int(raw["order"]):
        raise _fail(index, "order", "expected integer")
    if "status" in raw and raw["status"] not in STATUSES:
        raise _fail(index, "status", f"expected one of {STATUSES}")
    if "priority" in raw and raw["priority"] not in PRIORITIES:
        raise _fail(index, "priority", f"expected one of {PRIORITIES}")
    if raw.get("externalSource") is not None and raw["externalSource"] not in EXTERNAL_SOURCES:
        raise _fail(index, "externalSource", f"expected one of {EXTERNAL_SOURCES}")
    if "notes" in raw:
        if not isinstance(raw["notes"], list):
            raise _fail(index, "notes", "expected list")
        for note in raw["notes"]:
            _validate_note(index, note)
    if raw.get("recurrence") is not None:
        _validate_recurrence(index, raw["recurrence"])


def migrate_task(raw: dict[str, Any]) -> Task:
    """Fill every field missing from an older record with its default."""
    now = now_iso()
    rec = raw.get("recurrence")
    return Task(
        id=raw.get("id") or gen_task_id(),
        title=clip_title(raw.get("title") or ""),
        description=raw.get("description") or "",
        status=raw.get("status") or "todo",
        priority=raw.get("priority") or "none",
        project=raw.get("project"),
        tags=list(raw.get("tags") or []),
        due_date=raw.get("dueDate"),
        created_at=raw.get("createdAt") or now,
        updated_at=raw.get("updatedAt") or now,
        completed_at=raw.get("completedAt"),
        order=raw.get("order", 0),
        parent_id=raw.get("parentId"),
        subtask_ids=list(raw.get("subtaskIds") or []),
        blocked_by=list(raw.get("blockedBy") or []),
        recurrence=RecurrenceRule.from_dict(rec) if rec else None,
        estimate_minutes=raw.get("estimateMinutes"),
        actual_minutes=raw.get("actualMinutes"),
        notes=[TaskNote.from_dict(n) for n in raw.get("notes") or []],
        external_id=raw.get("externalId"),
        external_source=raw.get("externalSource"),
    )


def parse_persisted_tasks(raw: Any) -> list[Task]:
    """Validate and migrate a decoded task file.

    Raises:
        CorruptDataError: ``raw`` is not an array of well-formed task records.
    """
    if not isinstance(raw, list):
        _msg = f"expected array of tasks, got {type(raw).__name__}"
        raise CorruptDataError(_msg)
    for i, rec in enumerate(raw):
        validate_record(i, rec)
    return [migrate_task(rec) for rec in raw]
