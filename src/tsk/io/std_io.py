# ruff: noqa: T201

from tsk.core.models import Task, TreeRow
from tsk.util.ids import short_id

_STATUS_MARK = {"todo": " ", "in_progress": ">", "done": "x", "archived": "-"}
_PRIORITY_MARK = {"urgent": "!!!", "high": "!!", "medium": "!", "low": ".", "none": ""}


def print_task(t: Task, *, progress: dict[str, int] | None = None, blocked: bool = False) -> None:
    print(f"id: {t.id}")
    print(f"title: {t.title}")
    print(f"status: {t.status}  priority: {t.priority}")
    print(f"project: {t.project or '-'}  due: {t.due_date or '-'}")
    if t.tags:
        print(f"tags: {', '.join(t.tags)}")
    if t.description:
        print(f"description: {t.description}")
    if t.parent_id:
        print(f"parent: {t.parent_id}")
    if progress is not None and progress["total"] > 0:
        print(f"subtasks: {progress['done']}/{progress['total']} done")
    if t.blocked_by:
        print(f"blocked_by: {', '.join(t.blocked_by)}{'  (blocked)' if blocked else ''}")
    if t.recurrence is not None:
        print(f"recurrence: every {t.recurrence.interval} {t.recurrence.frequency}")
    if t.estimate_minutes is not None or t.actual_minutes is not None:
        print(f"time: {t.actual_minutes or 0}m / {t.estimate_minutes if t.estimate_minutes is not None else '-'}m")
    print(f"created_at: {t.created_at}  updated_at: {t.updated_at}")
    if t.completed_at:
        print(f"completed_at: {t.completed_at}")
    for n in t.notes:
        print(f"  [{n.created_at}] ({n.source}) {n.content}")


def format_row(row: TreeRow) -> str:
    t = row.task
    indent = "  " * row.depth
    branch = ("└ " if row.is_last else "├ ") if row.depth > 0 else ""
    meta = []
    if t.project:
        meta.append(f"@{t.project}")
    meta.extend(f"#{tag}" for tag in t.tags)
    if t.due_date:
        meta.append(f"due:{t.due_date}")
    prio = _PRIORITY_MARK.get(t.priority, "")
    return (
        f"{short_id(t.id)} [{_STATUS_MARK.get(t.status, '?')}] {indent}{branch}{t.title}"
        f"{'  ' + prio if prio else ''}{'  ' + ' '.join(meta) if meta else ''}"
    )
