"""Wire format of the agent mailbox.

Inbox entries are command envelopes::

    {"id": "c1", "command": "create", "source": "claude-code",
     "timestamp": "...", "payload": {"title": "Buy milk"}}

Outbox entries are response envelopes::

    {"commandId": "c1", "status": "ok", "data": {...}, "timestamp": "..."}

Each command kind decodes to its own frozen payload dataclass, so handlers
match on the payload type.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from tsk.core.errors import PayloadError
from tsk.core.models import PRIORITIES, STATUSES, Priority
from tsk.util.time import now_iso

CommandKind = Literal[
    "create",
    "create-subtask",
    "bulk-create",
    "update",
    "complete",
    "uncomplete",
    "delete",
    "query",
    "list",
    "show",
    "list-projects",
    "list-tags",
    "stats",
    "add-note",
    "start-timer",
    "stop-timer",
]
COMMAND_KINDS: tuple[str, ...] = (
    "create",
    "create-subtask",
    "bulk-create",
    "update",
    "complete",
    "uncomplete",
    "delete",
    "query",
    "list",
    "show",
    "list-projects",
    "list-tags",
    "stats",
    "add-note",
    "start-timer",
    "stop-timer",
)

AgentSource = Literal["claude-code", "codex", "custom"]
AGENT_SOURCES: tuple[str, ...] = ("claude-code", "codex", "custom")

OUTBOX_MAX_ENTRIES = 100


class UnknownCommandError(PayloadError):
    """The envelope names a command kind the bridge does not handle."""


# ---- Payload variants ----


@dataclass(frozen=True)
class CreatePayload:
    title: str
    description: str = ""
    priority: Priority = "none"
    project: str | None = None
    tags: tuple[str, ...] = ()
    due_date: str | None = None


@dataclass(frozen=True)
class CreateSubtaskPayload:
    parent_id: str
    title: str
    description: str = ""
    priority: Priority = "none"


@dataclass(frozen=True)
class BulkCreatePayload:
    tasks: tuple[CreatePayload, ...]
    skipped: int = 0


@dataclass(frozen=True)
class UpdatePayload:
    task_id: str
    # TaskStore.update_task のキーワード名 -> 値 (指定されたものだけ)
    changes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskRefPayload:
    """Payload of commands that only name a task (complete, delete, show, ...)."""

    task_id: str


@dataclass(frozen=True)
class QueryPayload:
    status: tuple[str, ...] | None = None
    priority: tuple[str, ...] | None = None
    project: str | None = None
    tag: str | None = None
    search: str = ""
    limit: int | None = None


@dataclass(frozen=True)
class ListPayload:
    limit: int | None = None


@dataclass(frozen=True)
class AddNotePayload:
    task_id: str
    content: str


@dataclass(frozen=True)
class NoPayload:
    pass


Payload = (
    CreatePayload
    | CreateSubtaskPayload
    | BulkCreatePayload
    | UpdatePayload
    | TaskRefPayload
    | QueryPayload
    | ListPayload
    | AddNotePayload
    | NoPayload
)


# ---- Field readers ----


def _missing(name: str) -> PayloadError:
    return PayloadError(f"Missing required field: {name}")


def _invalid(name: str, expected: str) -> PayloadError:
    return PayloadError(f"Invalid field: {name} (expected {expected})")


def _required_str(p: Mapping[str, Any], name: str) -> str:
    v = p.get(name)
    if v is None or v == "":
        raise _missing(name)
    if not isinstance(v, str):
        raise _invalid(name, "string")
    return v


def _task_ref(p: Mapping[str, Any], name: str = "taskId") -> str:
    v = p.get(name)
    if v is None or (isinstance(v, str) and not v.strip()):
        raise _missing(name)
    if isinstance(v, bool) or not isinstance(v, (str, int)):
        raise _invalid(name, "string")
    return str(v)


def _optional_str(p: Mapping[str, Any], name: str) -> str | None:
    v = p.get(name)
    if v is None:
        return None
    if not isinstance(v, str):
        raise _invalid(name, "string")
    return v


def _tags(p: Mapping[str, Any], name: str = "tags") -> tuple[str, ...]:
    v = p.get(name)
    if v is None:
        return ()
    if not isinstance(v, list) or not all(isinstance(x, str) for x in v):
        raise _invalid(name, "list of strings")
    return tuple(v)


def _priority_or_none(v: Any) -> Priority:
    return v if v in PRIORITIES else "none"


def _limit(p: Mapping[str, Any]) -> int | None:
    v = p.get("limit")
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, int):
        raise _invalid("limit", "integer")
    return v if v > 0 else None


def _str_or_list(p: Mapping[str, Any], name: str) -> tuple[str, ...] | None:
    v = p.get(name)
    if v is None or v == "" or v == []:
        return None
    if isinstance(v, str):
        return (v,)
    if isinstance(v, list) and all(isinstance(x, str) for x in v):
        return tuple(v)
    raise _invalid(name, "string or list of strings")


def _decode_create(p: Mapping[str, Any]) -> CreatePayload:
    return CreatePayload(
        title=_required_str(p, "title"),
        description=_optional_str(p, "description") or "",
        priority=_priority_or_none(p.get("priority")),
        project=_optional_str(p, "project") or None,
        tags=_tags(p),
        due_date=_optional_str(p, "dueDate") or None,
    )


def _decode_bulk(p: Mapping[str, Any]) -> BulkCreatePayload:
    items = p.get("tasks")
    if not isinstance(items, list) or len(items) == 0:
        _msg = "Missing or empty tasks array"
        raise PayloadError(_msg)
    tasks: list[CreatePayload] = []
    skipped = 0
    for item in items:
        # タイトルのない要素は読み飛ばす
        if not isinstance(item, dict) or not item.get("title"):
            skipped += 1
            continue
        tasks.append(_decode_create(item))
    return BulkCreatePayload(tasks=tuple(tasks), skipped=skipped)


def _decode_update(p: Mapping[str, Any]) -> UpdatePayload:
    task_id = _task_ref(p)
    changes: dict[str, Any] = {}
    if "title" in p:
        changes["title"] = _required_str(p, "title")
    if "description" in p:
        changes["description"] = _optional_str(p, "description") or ""
    if p.get("priority") in PRIORITIES:
        changes["priority"] = p["priority"]
    if p.get("status") in STATUSES:
        changes["status"] = p["status"]
    if "project" in p:
        changes["project"] = _optional_str(p, "project") or None
    if "tags" in p:
        changes["tags"] = list(_tags(p))
    if "dueDate" in p:
        changes["due_date"] = _optional_str(p, "dueDate") or None
    return UpdatePayload(task_id=task_id, changes=changes)


def decode_payload(kind: str, p: Mapping[str, Any]) -> Payload:  # noqa: C901, PLR0911
    match kind:
        case "create":
            return _decode_create(p)
        case "create-subtask":
            parent_id = _task_ref(p, "parentId")
            return CreateSubtaskPayload(
                parent_id=parent_id,
                title=_required_str(p, "title"),
                description=_optional_str(p, "description") or "",
                priority=_priority_or_none(p.get("priority")),
            )
        case "bulk-create":
            return _decode_bulk(p)
        case "update":
            return _decode_update(p)
        case "complete" | "uncomplete" | "delete" | "show" | "start-timer":
            return TaskRefPayload(task_id=_task_ref(p))
        case "query":
            return QueryPayload(
                status=_str_or_list(p, "status"),
                priority=_str_or_list(p, "priority"),
                project=_optional_str(p, "project") or None,
                tag=_optional_str(p, "tag") or None,
                search=_optional_str(p, "search") or "",
                limit=_limit(p),
            )
        case "list":
            return ListPayload(limit=_limit(p))
        case "add-note":
            task_id = _task_ref(p)
            return AddNotePayload(task_id=task_id, content=_required_str(p, "content"))
        case "list-projects" | "list-tags" | "stats" | "stop-timer":
            return NoPayload()
    _msg = f"Unknown command: {kind}"
    raise UnknownCommandError(_msg)


# ---- Envelopes ----


@dataclass(frozen=True)
class AgentCommand:
    id: str
    kind: CommandKind
    payload: Payload
    source: AgentSource = "custom"
    timestamp: str | None = None

    @staticmethod
    def decode(raw: Any) -> "AgentCommand":
        """Decode one inbox entry.

        Raises:
            PayloadError: the envelope or its payload is malformed.
            UnknownCommandError: the command kind is not supported.
        """
        if not isinstance(raw, dict):
            _msg = "Invalid command envelope: expected object"
            raise PayloadError(_msg)
        kind = raw.get("command")
        if not isinstance(kind, str) or not kind:
            raise _missing("command")
        payload = raw.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise _invalid("payload", "object")
        source = raw.get("source")
        return AgentCommand(
            id=str(raw.get("id") or ""),
            kind=kind,  # type: ignore[arg-type]
            payload=decode_payload(kind, payload),
            source=source if source in AGENT_SOURCES else "custom",  # type: ignore[arg-type]
            timestamp=raw.get("timestamp") if isinstance(raw.get("timestamp"), str) else None,
        )


def encode_command(
    kind: str,
    payload: Mapping[str, Any] | None = None,
    *,
    command_id: str,
    source: str = "custom",
) -> dict[str, Any]:
    return {
        "id": command_id,
        "timestamp": now_iso(),
        "source": source,
        "command": kind,
        "payload": dict(payload or {}),
    }


@dataclass
class AgentResponse:
    command_id: str
    status: Literal["ok", "error"]
    data: Any = None
    error: str | None = None
    timestamp: str = field(default_factory=now_iso)

    @staticmethod
    def ok(command_id: str, data: Any) -> "AgentResponse":
        return AgentResponse(command_id=command_id, status="ok", data=data)

    @staticmethod
    def fail(command_id: str, error: str) -> "AgentResponse":
        return AgentResponse(command_id=command_id, status="error", error=error)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"commandId": self.command_id, "status": self.status}
        if self.status == "ok":
            d["data"] = self.data
        else:
            d["error"] = self.error
        d["timestamp"] = self.timestamp
        return d
