import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, assert_never

from tsk.bridge.mailbox import Mailbox
from tsk.bridge.protocol import (
    OUTBOX_MAX_ENTRIES,
    AddNotePayload,
    AgentCommand,
    AgentResponse,
    BulkCreatePayload,
    CreatePayload,
    CreateSubtaskPayload,
    ListPayload,
    NoPayload,
    QueryPayload,
    TaskRefPayload,
    UpdatePayload,
    encode_command,
)
from tsk.core.errors import TskError
from tsk.core.models import FilterState, Task
from tsk.storage.task_store import TaskStore
from tsk.util.ids import gen_command_id
from tsk.util.logger import setup_logger

logger = setup_logger("tsk")

DEFAULT_POLL_INTERVAL = 2.0


@dataclass(frozen=True)
class AgentEvent:
    command: str
    summary: str
    status: Literal["ok", "error"]


AgentEventCallback = Callable[[AgentEvent], None]

_SUMMARIES = {
    "update": "updated task",
    "complete": "completed task",
    "uncomplete": "reopened task",
    "delete": "deleted task",
    "query": "queried tasks",
    "list": "listed tasks",
    "show": "showed task",
    "list-projects": "listed projects",
    "list-tags": "listed tags",
    "stats": "read stats",
    "add-note": "added note",
    "start-timer": "started timer",
    "stop-timer": "stopped timer",
}


class AgentBridge:
    """Serves TaskStore operations to an out-of-process agent via a mailbox.

    Poll cycle:
      1. read the inbox (once at start, then every ``poll_interval`` seconds),
      2. reset it to ``[]`` and stop if it is absent, blank or unparseable,
      3. dispatch every entry in order, one response each,
      4. append the responses to the outbox (trimmed to ``outbox_max_entries``),
      5. reset the inbox to ``[]``.

    A bad command becomes an error response; it never aborts the batch.
    """

    def __init__(
        self,
        store: TaskStore,
        mailbox: Mailbox,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        outbox_max_entries: int = OUTBOX_MAX_ENTRIES,
        on_event: AgentEventCallback | None = None,
    ) -> None:
        self.store = store
        self.mailbox = mailbox
        self.poll_interval = poll_interval
        self.outbox_max_entries = outbox_max_entries
        self.processed_count = 0
        self._on_event = on_event
        self._poll_task: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[int] | None = None
        self._cycle_lock = asyncio.Lock()

    # ---- Lifecycle ----

    async def start(self) -> None:
        if self._poll_task is not None:
            return
        await self.mailbox.ensure()
        self._poll_task = asyncio.create_task(self._poll_loop())
        await self._run_cycle()

    def stop(self) -> None:
        """Cancel the poll timer. A cycle already in flight runs to completion."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def drain(self) -> None:
        """Wait for the in-flight cycle, if any."""
        if self._inflight is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._inflight

    def is_running(self) -> bool:
        return self._poll_task is not None

    def on_event(self, callback: AgentEventCallback | None) -> None:
        self._on_event = callback

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self._run_cycle()

    async def _run_cycle(self) -> None:
        self._inflight = asyncio.ensure_future(self._safe_process())
        # stop() がループを止めても処理中のサイクルは最後まで走らせる
        await asyncio.shield(self._inflight)

    async def _safe_process(self) -> int:
        try:
            return await self.process_inbox()
        except Exception:
            logger.exception("Agent poll cycle failed")
            return 0

    # ---- Inbox processing ----

    async def process_inbox(self) -> int:
        """Run one poll cycle. Returns the number of entries consumed."""
        async with self._cycle_lock:
            entries = await self.mailbox.read_inbox()
            if entries is None:
                await self.mailbox.clear_inbox()
                return 0
            if not entries:
                return 0

            responses: list[AgentResponse] = []
            try:
                for raw in entries:
                    response = self.process_command(raw)
                    responses.append(response)
                    self.processed_count += 1
                    self._emit(raw, response)
                await self.mailbox.append_outbox(responses, max_entries=self.outbox_max_entries)
            finally:
                # 失敗しても再実行しない
                await self.mailbox.clear_inbox()
            logger.info("Processed %d agent command(s)", len(entries))
            return len(entries)

    def process_command(self, raw: Any) -> AgentResponse:
        command_id = str(raw.get("id") or "") if isinstance(raw, dict) else ""
        try:
            cmd = AgentCommand.decode(raw)
            response = self._dispatch(cmd)
        except TskError as e:
            response = AgentResponse.fail(command_id, str(e))
        except Exception as e:
            logger.exception("Agent command %s failed", command_id)
            response = AgentResponse.fail(command_id, str(e) or type(e).__name__)
        logger.debug("Agent command %s -> %s", command_id, response.status)
        return response

    def _dispatch(self, cmd: AgentCommand) -> AgentResponse:  # noqa: C901, PLR0911
        p = cmd.payload
        match p:
            case CreatePayload():
                return self._create(cmd, p)
            case CreateSubtaskPayload():
                return self._create_subtask(cmd, p)
            case BulkCreatePayload():
                return self._bulk_create(cmd, p)
            case UpdatePayload():
                return self._update(cmd, p)
            case TaskRefPayload():
                match cmd.kind:
                    case "complete":
                        return self._complete(cmd, p)
                    case "uncomplete":
                        return self._uncomplete(cmd, p)
                    case "delete":
                        return self._delete(cmd, p)
                    case "show":
                        return self._show(cmd, p)
                    case "start-timer":
                        return self._start_timer(cmd, p)
            case QueryPayload():
                return self._query(cmd, p)
            case ListPayload():
                tasks = [t for t in self.store.tasks if t.status != "archived"]
                if p.limit:
                    tasks = tasks[: p.limit]
                return AgentResponse.ok(cmd.id, [t.summary() for t in tasks])
            case AddNotePayload():
                return self._add_note(cmd, p)
            case NoPayload():
                match cmd.kind:
                    case "list-projects":
                        return AgentResponse.ok(cmd.id, self.store.get_projects())
                    case "list-tags":
                        return AgentResponse.ok(cmd.id, self.store.get_tags())
                    case "stats":
                        return AgentResponse.ok(cmd.id, self.store.get_stats())
                    case "stop-timer":
                        return self._stop_timer(cmd)
            case _:
                assert_never(p)
        return AgentResponse.fail(cmd.id, f"Unknown command: {cmd.kind}")

    # ---- Command handlers ----

    def _stamp_source(self, cmd: AgentCommand, task: Task) -> None:
        if cmd.source != "custom":
            task.external_source = cmd.source

    def _create(self, cmd: AgentCommand, p: CreatePayload) -> AgentResponse:
        task = self.store.add_task(
            p.title,
            description=p.description,
            priority=p.priority,
            project=p.project,
            tags=list(p.tags),
            due_date=p.due_date,
        )
        if task is None:
            return AgentResponse.fail(cmd.id, "Failed to create task")
        self._stamp_source(cmd, task)
        self.store.flush()
        return AgentResponse.ok(cmd.id, task.summary())

    def _create_subtask(self, cmd: AgentCommand, p: CreateSubtaskPayload) -> AgentResponse:
        parent = self.store.resolve(p.parent_id)
        subtask = self.store.add_subtask(parent.id, p.title, description=p.description, priority=p.priority)
        if subtask is None:
            return AgentResponse.fail(cmd.id, "Failed to create subtask")
        self._stamp_source(cmd, subtask)
        self.store.flush()
        return AgentResponse.ok(cmd.id, subtask.summary())

    def _bulk_create(self, cmd: AgentCommand, p: BulkCreatePayload) -> AgentResponse:
        created: list[dict[str, Any]] = []
        for item in p.tasks:
            task = self.store.add_task(
                item.title,
                description=item.description,
                priority=item.priority,
                project=item.project,
                tags=list(item.tags),
                due_date=item.due_date,
            )
            if task is None:
                continue
            self._stamp_source(cmd, task)
            created.append(task.summary())
        self.store.flush()
        return AgentResponse.ok(cmd.id, {"created": len(created), "tasks": created})

    def _update(self, cmd: AgentCommand, p: UpdatePayload) -> AgentResponse:
        task = self.store.resolve(p.task_id)
        updated = self.store.update_task(task.id, **p.changes)
        if updated is None:
            return AgentResponse.fail(cmd.id, "Failed to update task")
        self.store.flush()
        return AgentResponse.ok(cmd.id, updated.summary())

    def _complete(self, cmd: AgentCommand, p: TaskRefPayload) -> AgentResponse:
        task = self.store.resolve(p.task_id)
        if task.status == "done":
            return AgentResponse.ok(cmd.id, {"message": "Task already done", "task": task.summary()})

        if task.recurrence is not None:
            next_task = self.store.complete_recurring(task.id)
            if task.status != "done":
                return AgentResponse.fail(cmd.id, f"Cannot compute next occurrence: {task.id}")
            self.store.flush()
            return AgentResponse.ok(
                cmd.id,
                {
                    "completed": task.summary(),
                    "nextOccurrence": next_task.summary() if next_task else None,
                    "unblocked": self.store.get_unblocked_tasks(task.id),
                },
            )

        self.store.move_to_status(task.id, "done")
        self.store.flush()
        return AgentResponse.ok(cmd.id, {**task.summary(), "unblocked": self.store.get_unblocked_tasks(task.id)})

    def _uncomplete(self, cmd: AgentCommand, p: TaskRefPayload) -> AgentResponse:
        task = self.store.resolve(p.task_id)
        if task.status != "done":
            return AgentResponse.ok(cmd.id, {"message": "Task is not done", "task": task.summary()})
        self.store.move_to_status(task.id, "todo")
        self.store.flush()
        return AgentResponse.ok(cmd.id, task.summary())

    def _delete(self, cmd: AgentCommand, p: TaskRefPayload) -> AgentResponse:
        task = self.store.resolve(p.task_id)
        title = task.title
        if not self.store.delete_task(task.id):
            return AgentResponse.fail(cmd.id, "Failed to delete task")
        self.store.flush()
        return AgentResponse.ok(cmd.id, {"deleted": True, "title": title})

    def _query(self, cmd: AgentCommand, p: QueryPayload) -> AgentResponse:
        f = FilterState(
            status=list(p.status) if p.status else "all",  # type: ignore[arg-type]
            priority=list(p.priority) if p.priority else "all",  # type: ignore[arg-type]
            project=p.project,
            tag=p.tag,
            search=p.search,
        )
        tasks = self.store.get_filtered(f)
        if p.limit:
            tasks = tasks[: p.limit]
        return AgentResponse.ok(cmd.id, [t.summary() for t in tasks])

    def _show(self, cmd: AgentCommand, p: TaskRefPayload) -> AgentResponse:
        task = self.store.resolve(p.task_id)
        subtasks = self.store.get_subtasks(task.id)
        data = task.to_dict()
        data["subtasks"] = [t.summary() for t in subtasks]
        if subtasks:
            data["progress"] = self.store.get_progress(task.id)
        data["blocked"] = self.store.is_blocked(task.id)
        return AgentResponse.ok(cmd.id, data)

    def _add_note(self, cmd: AgentCommand, p: AddNotePayload) -> AgentResponse:
        task = self.store.resolve(p.task_id)
        note = self.store.add_note(task.id, p.content, "sync")
        if note is None:
            return AgentResponse.fail(cmd.id, "Failed to add note")
        self.store.flush()
        return AgentResponse.ok(cmd.id, {"taskId": task.id, "note": note.to_dict()})

    def _start_timer(self, cmd: AgentCommand, p: TaskRefPayload) -> AgentResponse:
        task = self.store.resolve(p.task_id)
        if not self.store.start_timer(task.id):
            return AgentResponse.fail(cmd.id, "Timer already running for this task")
        self.store.flush()
        return AgentResponse.ok(cmd.id, {"taskId": task.id, "message": "Timer started"})

    def _stop_timer(self, cmd: AgentCommand) -> AgentResponse:
        elapsed = self.store.stop_timer()
        self.store.flush()
        return AgentResponse.ok(cmd.id, {"elapsed": elapsed, "message": f"Timer stopped ({elapsed} minutes logged)"})

    # ---- Sending ----

    async def send(
        self,
        kind: str,
        payload: dict[str, Any] | None = None,
        *,
        source: str = "custom",
        command_id: str | None = None,
    ) -> str:
        """Append a command envelope to the inbox and return its id."""
        cid = command_id or gen_command_id()
        async with self._cycle_lock:
            await self.mailbox.ensure()
            await self.mailbox.append_inbox([encode_command(kind, payload, command_id=cid, source=source)])
        logger.debug("Queued agent command %s (%s)", cid, kind)
        return cid

    # ---- Events ----

    def _emit(self, raw: Any, response: AgentResponse) -> None:
        if self._on_event is None:
            return
        kind = str(raw.get("command", "")) if isinstance(raw, dict) else ""
        try:
            self._on_event(AgentEvent(command=kind, summary=summarize(raw, response), status=response.status))
        except Exception:
            logger.exception("Agent event callback failed")


def summarize(raw: Any, response: AgentResponse) -> str:
    """Short human-readable description of a processed command."""
    if response.status == "error":
        return response.error or "Error"
    kind = raw.get("command", "") if isinstance(raw, dict) else ""
    payload = raw.get("payload") if isinstance(raw, dict) else None
    title = payload.get("title") if isinstance(payload, dict) else None
    match kind:
        case "create":
            return f'created "{title}"'
        case "create-subtask":
            return f'added subtask "{title}"'
        case "bulk-create":
            created = response.data.get("created", 0) if isinstance(response.data, dict) else 0
            return f"created {created} tasks"
    return _SUMMARIES.get(kind, str(kind))
