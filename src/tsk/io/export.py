import csv
import io
import json
from pathlib import Path
from typing import Literal

import yaml  # type: ignore[import-untyped]

from tsk.core.models import Task

ExportFormat = Literal["json", "yaml", "csv", "markdown"]
EXPORT_FORMATS: tuple[str, ...] = ("json", "yaml", "csv", "markdown")

CSV_COLUMNS = (
    "id",
    "title",
    "status",
    "priority",
    "project",
    "tags",
    "dueDate",
    "createdAt",
    "completedAt",
    "parentId",
    "estimateMinutes",
    "actualMinutes",
)


def export_json(tasks: list[Task]) -> str:
    return json.dumps([t.to_dict() for t in tasks], ensure_ascii=False, indent=2)


def export_yaml(tasks: list[Task]) -> str:
    return yaml.safe_dump([t.to_dict() for t in tasks], allow_unicode=True, sort_keys=False)


def export_csv(tasks: list[Task]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for t in tasks:
        writer.writerow(
            [
                t.id,
                t.title,
                t.status,
                t.priority,
                t.project or "",
                ";".join(t.tags),
                t.due_date or "",
                t.created_at,
                t.completed_at or "",
                t.parent_id or "",
                "" if t.estimate_minutes is None else t.estimate_minutes,
                "" if t.actual_minutes is None else t.actual_minutes,
            ],
        )
    return buf.getvalue()


def export_markdown(tasks: list[Task]) -> str:
    """Checkbox list; subtasks are indented under their parent."""
    by_id = {t.id: t for t in tasks}
    lines: list[str] = []

    def emit(t: Task, depth: int, seen: set[str]) -> None:
        if t.id in seen:
            return
        seen.add(t.id)
        box = "x" if t.status == "done" else " "
        extra = []
        if t.priority != "none":
            extra.append(f"!{t.priority}")
        if t.project:
            extra.append(f"@{t.project}")
        extra.extend(f"#{tag}" for tag in t.tags)
        if t.due_date:
            extra.append(f"due:{t.due_date}")
        suffix = f" ({' '.join(extra)})" if extra else ""
        lines.append(f"{'  ' * depth}- [{box}] {t.title}{suffix}")
        for sid in t.subtask_ids:
            child = by_id.get(sid)
            if child is not None:
                emit(child, depth + 1, seen)

    seen: set[str] = set()
    for t in tasks:
        # 親がエクスポート対象に含まれていれば親の下に出す
        if t.parent_id is None or t.parent_id not in by_id:
            emit(t, 0, seen)
    return "\n".join(lines) + ("\n" if lines else "")


def export_tasks(tasks: list[Task], fmt: str) -> str:
    match fmt:
        case "json":
            return export_json(tasks)
        case "yaml":
            return export_yaml(tasks)
        case "csv":
            return export_csv(tasks)
        case "markdown" | "md":
            return export_markdown(tasks)
    _msg = f"Unknown export format: {fmt}"
    raise ValueError(_msg)


def write_export(tasks: list[Task], fmt: str, path: str) -> None:
    _path = Path(path)
    if _path.exists():
        _msg = f"File already exists: {_path}"
        raise FileExistsError(_msg)
    text = export_tasks(tasks, fmt)
    with _path.open("w", encoding="utf-8", newline="") as f:
        f.write(text)
