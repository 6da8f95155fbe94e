from dataclasses import dataclass, field
from typing import Any, Literal

from tsk.util.time import now_iso

Status = Literal["todo", "in_progress", "done", "archived"]
Priority = Literal["none", "low", "medium", "high", "urgent"]
Frequency = Literal["daily", "weekly", "monthly", "yearly"]
NoteSource = Literal["user", "sync"]
ExternalSource = Literal["todoist", "linear", "asana", "claude-code", "codex", "github-issues"]
SortField = Literal["priority", "dueDate", "createdAt", "title", "order"]
SortDirection = Literal["asc", "desc"]

STATUSES: tuple[Status, ...] = ("todo", "in_progress", "done", "archived")
PRIORITIES: tuple[Priority, ...] = ("none", "low", "medium", "high", "urgent")
FREQUENCIES: tuple[Frequency, ...] = ("daily", "weekly", "monthly", "yearly")
NOTE_SOURCES: tuple[NoteSource, ...] = ("user", "sync")
EXTERNAL_SOURCES: tuple[ExternalSource, ...] = ("todoist", "linear", "asana", "claude-code", "codex", "github-issues")
SORT_FIELDS: tuple[SortField, ...] = ("priority", "dueDate", "createdAt", "title", "order")
DUE_WINDOWS: tuple[str, ...] = ("today", "overdue", "week")

PRIORITY_WEIGHT: dict[str, int] = {p: i for i, p in enumerate(PRIORITIES)}
TITLE_MAX_LENGTH = 200


def clip_title(title: str) -> str:
    return title[:TITLE_MAX_LENGTH]


@dataclass
class TaskNote:
    id: str
    content: str
    created_at: str = field(default_factory=now_iso)
    source: NoteSource = "user"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "content": self.content, "createdAt": self.created_at, "source": self.source}

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "TaskNote":
        return TaskNote(id=d["id"], content=d["content"], created_at=d["createdAt"], source=d["source"])


@dataclass
class RecurrenceRule:
    frequency: Frequency
    interval: int = 1
    days_of_week: list[int] | None = None  # 0=Mon..6=Sun
    day_of_month: int | None = None
    end_date: str | None = None
    next_due: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"frequency": self.frequency, "interval": self.interval}
        if self.days_of_week is not None:
            d["daysOfWeek"] = list(self.days_of_week)
        if self.day_of_month is not None:
            d["dayOfMonth"] = self.day_of_month
        if self.end_date is not None:
            d["endDate"] = self.end_date
        if self.next_due is not None:
            d["nextDue"] = self.next_due
        return d

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "RecurrenceRule":
        days = d.get("daysOfWeek")
        return RecurrenceRule(
            frequency=d["frequency"],
            interval=d.get("interval", 1),
            days_of_week=list(days) if days is not None else None,
            day_of_month=d.get("dayOfMonth"),
            end_date=d.get("endDate"),
            next_due=d.get("nextDue"),
        )


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: Status = "todo"
    priority: Priority = "none"
    project: str | None = None
    tags: list[str] = field(default_factory=list)
    due_date: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    completed_at: str | None = None
    order: int = 0
    parent_id: str | None = None
    subtask_ids: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    recurrence: RecurrenceRule | None = None
    estimate_minutes: int | None = None
    actual_minutes: int | None = None
    notes: list[TaskNote] = field(default_factory=list)
    external_id: str | None = None
    external_source: ExternalSource | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "project": self.project,
            "tags": list(self.tags),
            "dueDate": self.due_date,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "completedAt": self.completed_at,
            "order": self.order,
            "parentId": self.parent_id,
            "subtaskIds": list(self.subtask_ids),
            "blockedBy": list(self.blocked_by),
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "estimateMinutes": self.estimate_minutes,
            "actualMinutes": self.actual_minutes,
            "notes": [n.to_dict() for n in self.notes],
            "externalId": self.external_id,
            "externalSource": self.external_source,
        }

    def summary(self) -> dict[str, Any]:
        """Compact view used in agent responses."""
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "project": self.project,
            "tags": list(self.tags),
            "dueDate": self.due_date,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "Task":
        """Build a task from a complete record (see ``core.schema`` for older shapes)."""
        rec = d.get("recurrence")
        return Task(
            id=d["id"],
            title=d["title"],
            description=d["description"],
            status=d["status"],
            priority=d["priority"],
            project=d["project"],
            tags=list(d["tags"]),
            due_date=d["dueDate"],
            created_at=d["createdAt"],
            updated_at=d["updatedAt"],
            completed_at=d["completedAt"],
            order=d["order"],
            parent_id=d["parentId"],
            subtask_ids=list(d["subtaskIds"]),
            blocked_by=list(d["blockedBy"]),
            recurrence=RecurrenceRule.from_dict(rec) if rec else None,
            estimate_minutes=d["estimateMinutes"],
            actual_minutes=d["actualMinutes"],
            notes=[TaskNote.from_dict(n) for n in d["notes"]],
            external_id=d["externalId"],
            external_source=d["externalSource"],
        )


@dataclass
class FilterState:
    status: list[Status] | Literal["all"] = "all"
    priority: list[Priority] | Literal["all"] = "all"
    project: str | None = None
    tag: str | None = None
    search: str = ""
    sort_by: SortField = "priority"
    sort_direction: SortDirection = "desc"
    show_subtasks: bool = True
    # "today", "overdue", "week" or a YYYY-MM-DD date
    due: str | None = None


@dataclass(frozen=True)
class TreeRow:
    task: Task
    depth: int
    is_last: bool


@dataclass
class TreeNode:
    task: Task
    children: list["TreeNode"]
    depth: int


@dataclass
class UndoEntry:
    description: str
    snapshot: list[Task]
