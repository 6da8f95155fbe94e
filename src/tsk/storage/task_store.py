import asyncio
import copy
import math
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from tsk.core.models import (
    STATUSES,
    FilterState,
    Priority,
    RecurrenceRule,
    Status,
    Task,
    TaskNote,
    TreeNode,
    TreeRow,
    UndoEntry,
    clip_title,
)
from tsk.core.recurrence import compute_next_due, is_past_end
from tsk.core.sort import build_tree, filter_tasks, flatten_tree
from tsk.core.validate import detect_cycles, detect_inconsistencies
from tsk.storage.json_file import TaskFile
from tsk.util.ids import gen_note_id, gen_task_id, resolve_id
from tsk.util.logger import setup_logger
from tsk.util.time import now_iso

logger = setup_logger("tsk")

MAX_UNDO = 50
SAVE_DEBOUNCE_SECONDS = 0.3
SAVE_RETRY_SECONDS = 1.0

Listener = Callable[[], None]

_UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "priority",
        "project",
        "tags",
        "due_date",
        "status",
        "external_id",
        "external_source",
    },
)


class TaskStore:
    """In-memory task collection with undo history and debounced persistence.

    Every mutating method:
      1. pushes a deep copy of the current collection onto the undo stack,
      2. applies the change and stamps ``updated_at``,
      3. notifies subscribers,
      4. schedules a debounced save.

    Mutators report failure by returning ``None`` or ``False``; in that case
    nothing was changed and no undo entry was pushed.

    Saves are scheduled on the running asyncio loop. Without a running loop
    the store only marks itself dirty and callers persist with ``flush()``.
    """

    def __init__(
        self,
        task_file: TaskFile,
        *,
        max_undo: int = MAX_UNDO,
        save_debounce: float = SAVE_DEBOUNCE_SECONDS,
        retry_delay: float = SAVE_RETRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tasks: list[Task] = []
        self.max_undo = max_undo
        self.save_debounce = save_debounce
        self.retry_delay = retry_delay
        self.persistence_error: str | None = None

        # 起動中のタイマー (永続化しない)
        self.active_timer_task_id: str | None = None
        self._active_timer_start: float | None = None

        self._file = task_file
        self._clock = clock
        self._undo_stack: list[UndoEntry] = []
        self._redo_stack: list[UndoEntry] = []
        self._listeners: dict[int, Listener] = {}
        self._next_listener_key = 0
        self._dirty = False
        self._save_handle: asyncio.TimerHandle | None = None

    @classmethod
    def open(cls, path: str | Path, **kwargs: Any) -> "TaskStore":
        store = cls(TaskFile(path), **kwargs)
        store.load()
        return store

    @property
    def path(self) -> Path:
        return self._file.path

    # ---- CRUD ----

    def add_task(
        self,
        title: str,
        *,
        description: str = "",
        priority: Priority = "none",
        project: str | None = None,
        tags: list[str] | None = None,
        due_date: str | None = None,
        parent_id: str | None = None,
        recurrence: RecurrenceRule | None = None,
        estimate_minutes: int | None = None,
    ) -> Task | None:
        """Create a task. Returns ``None`` when ``parent_id`` does not exist."""
        if parent_id is not None and self.get(parent_id) is None:
            return None
        self._snapshot("Add task")
        task = self._create(
            title,
            description=description,
            priority=priority,
            project=project,
            tags=tags,
            due_date=due_date,
            parent_id=parent_id,
            recurrence=recurrence,
            estimate_minutes=estimate_minutes,
        )
        self._commit()
        return task

    def update_task(self, task_id: str, **updates: Any) -> Task | None:
        """Apply field updates given as keyword arguments.

        Only keys that are passed are changed, so ``project=None`` clears the
        project while omitting ``project`` leaves it alone. Unknown field names
        fail the whole update.
        """
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            logger.warning("Cannot update fields: %s", sorted(unknown))
            return None
        task = self.get(task_id)
        if task is None:
            return None
        if "status" in updates and updates["status"] not in STATUSES:
            return None
        self._snapshot("Update task")
        now = now_iso()
        for key, value in updates.items():
            match key:
                case "title":
                    task.title = clip_title(value)
                case "tags":
                    task.tags = list(value)
                case "status":
                    self._set_status(task, value, now)
                case _:
                    setattr(task, key, value)
        task.updated_at = now
        self._commit()
        return task

    def delete_task(self, task_id: str) -> bool:
        task = self.get(task_id)
        if task is None:
            return False
        self._snapshot("Delete task")
        now = now_iso()
        if task.parent_id is not None:
            parent = self.get(task.parent_id)
            if parent is not None:
                parent.subtask_ids = [sid for sid in parent.subtask_ids if sid != task_id]
                parent.updated_at = now
        doomed = self._collect_subtree_ids(task_id)
        self.tasks = [t for t in self.tasks if t.id not in doomed]
        if self.active_timer_task_id in doomed:
            self.active_timer_task_id = None
            self._active_timer_start = None
        self._commit()
        return True

    # ---- Status transitions ----

    def toggle_done(self, task_id: str) -> bool:
        task = self.get(task_id)
        if task is None:
            return False
        self._snapshot("Toggle done")
        now = now_iso()
        self._set_status(task, "todo" if task.status == "done" else "done", now)
        task.updated_at = now
        self._commit()
        return True

    def move_to_status(self, task_id: str, status: Status) -> bool:
        task = self.get(task_id)
        if task is None or status not in STATUSES:
            return False
        self._snapshot("Change status")
        now = now_iso()
        self._set_status(task, status, now)
        task.updated_at = now
        self._commit()
        return True

    # ---- Ordering ----

    def reorder(self, task_id: str, direction: Literal["up", "down"]) -> bool:
        """Swap a task with its neighbour in manual order."""
        seq = sorted(self.tasks, key=lambda t: (t.order, t.created_at, t.id))
        idx = next((i for i, t in enumerate(seq) if t.id == task_id), -1)
        if idx == -1:
            return False
        swap = idx - 1 if direction == "up" else idx + 1
        if swap < 0 or swap >= len(seq):
            return False
        self._snapshot("Reorder")
        seq[idx], seq[swap] = seq[swap], seq[idx]
        for i, t in enumerate(seq):
            t.order = i
        now = now_iso()
        seq[idx].updated_at = now
        seq[swap].updated_at = now
        self._commit()
        return True

    # ---- Subtasks ----

    def add_subtask(self, parent_id: str, title: str, **kwargs: Any) -> Task | None:
        if self.get(parent_id) is None:
            return None
        return self.add_task(title, parent_id=parent_id, **kwargs)

    def remove_subtask(self, parent_id: str, subtask_id: str) -> bool:
        parent = self.get(parent_id)
        if parent is None or subtask_id not in parent.subtask_ids:
            return False
        return self.delete_task(subtask_id)

    def promote_subtask(self, subtask_id: str) -> bool:
        """Detach a subtask from its parent so it becomes top level."""
        task = self.get(subtask_id)
        if task is None or task.parent_id is None:
            return False
        self._snapshot("Promote subtask")
        now = now_iso()
        self._detach(task, now)
        task.updated_at = now
        self._commit()
        return True

    def indent_task(self, task_id: str, new_parent_id: str) -> bool:
        """Move ``task_id`` under ``new_parent_id``.

        Fails when either task is missing, when the task is already a direct
        child of the new parent, or when the move would make the task its own
        ancestor.
        """
        task = self.get(task_id)
        new_parent = self.get(new_parent_id)
        if task is None or new_parent is None:
            return False
        if task_id == new_parent_id or task.parent_id == new_parent_id:
            return False
        if task_id in self.ancestor_ids(new_parent_id):
            return False

        self._snapshot("Indent task")
        now = now_iso()
        self._detach(task, now)
        task.parent_id = new_parent_id
        task.updated_at = now
        new_parent.subtask_ids.append(task_id)
        new_parent.updated_at = now
        self._commit()
        return True

    def ancestor_ids(self, task_id: str) -> list[str]:
        """Ids on the parent chain of ``task_id``, nearest first."""
        chain: list[str] = []
        seen = {task_id}
        cur = self.get(task_id)
        while cur is not None and cur.parent_id is not None and cur.parent_id not in seen:
            chain.append(cur.parent_id)
            seen.add(cur.parent_id)
            cur = self.get(cur.parent_id)
        return chain

    def get_subtasks(self, parent_id: str) -> list[Task]:
        parent = self.get(parent_id)
        if parent is None:
            return []
        return [t for t in (self.get(sid) for sid in parent.subtask_ids) if t is not None]

    def get_progress(self, task_id: str) -> dict[str, int]:
        subtasks = self.get_subtasks(task_id)
        return {"done": sum(1 for t in subtasks if t.status == "done"), "total": len(subtasks)}

    def get_top_level_tasks(self) -> list[Task]:
        return [t for t in self.tasks if t.parent_id is None]

    def get_task_tree(self, root_id: str | None = None) -> list[TreeNode]:
        return build_tree(self.tasks, root_id)

    # ---- Notes ----

    def add_note(self, task_id: str, content: str, source: Literal["user", "sync"] = "user") -> TaskNote | None:
        task = self.get(task_id)
        if task is None:
            return None
        self._snapshot("Add note")
        now = now_iso()
        note = TaskNote(id=gen_note_id(), content=content, created_at=now, source=source)
        task.notes.append(note)
        task.updated_at = now
        self._commit()
        return note

    def delete_note(self, task_id: str, note_id: str) -> bool:
        task = self.get(task_id)
        if task is None or all(n.id != note_id for n in task.notes):
            return False
        self._snapshot("Delete note")
        task.notes = [n for n in task.notes if n.id != note_id]
        task.updated_at = now_iso()
        self._commit()
        return True

    # ---- Recurrence ----

    def set_recurrence(self, task_id: str, rule: RecurrenceRule | None) -> bool:
        task = self.get(task_id)
        if task is None:
            return False
        self._snapshot("Set recurrence")
        task.recurrence = copy.deepcopy(rule)
        task.updated_at = now_iso()
        self._commit()
        return True

    def complete_recurring(self, task_id: str) -> Task | None:
        """Mark a recurring task done and create its next occurrence.

        Returns the new occurrence, or ``None`` when the task is missing, not
        recurring, or has an unparseable due or end date (nothing changes in
        those cases), or the series ended (the task is still marked done then).
        """
        task = self.get(task_id)
        if task is None or task.recurrence is None:
            return None

        rule = task.recurrence
        try:
            next_due = compute_next_due(task.due_date, rule)
            ended = is_past_end(next_due, rule)
        except ValueError as e:
            logger.warning("Cannot compute next occurrence of %s: %s", task.id, e)
            return None

        self._snapshot("Complete recurring")
        now = now_iso()
        self._set_status(task, "done", now)
        task.updated_at = now

        if ended:
            logger.info("Recurrence of %s ended at %s", task.id, rule.end_date)
            self._commit()
            return None

        next_rule = copy.deepcopy(rule)
        next_rule.next_due = next_due
        next_task = self._create(
            task.title,
            description=task.description,
            priority=task.priority,
            project=task.project,
            tags=list(task.tags),
            due_date=next_due,
            parent_id=task.parent_id if task.parent_id and self.get(task.parent_id) else None,
            recurrence=next_rule,
            estimate_minutes=task.estimate_minutes,
        )
        self._commit()
        return next_task

    # ---- Time tracking ----

    def set_estimate(self, task_id: str, minutes: int | None) -> bool:
        task = self.get(task_id)
        if task is None:
            return False
        self._snapshot("Set estimate")
        task.estimate_minutes = minutes
        task.updated_at = now_iso()
        self._commit()
        return True

    def log_time(self, task_id: str, minutes: int) -> bool:
        task = self.get(task_id)
        if task is None:
            return False
        self._snapshot("Log time")
        task.actual_minutes = (task.actual_minutes or 0) + minutes
        task.updated_at = now_iso()
        self._commit()
        return True

    def start_timer(self, task_id: str) -> bool:
        """Start the single process-wide timer on ``task_id``.

        A timer running on another task is stopped (and its time logged)
        first. A ``todo`` task moves to ``in_progress``.
        """
        task = self.get(task_id)
        if task is None or self.active_timer_task_id == task_id:
            return False
        if self.active_timer_task_id is not None:
            self.stop_timer()
        self.active_timer_task_id = task_id
        self._active_timer_start = self._clock()
        if task.status == "todo":
            self._snapshot("Start timer")
            task.status = "in_progress"
            task.updated_at = now_iso()
            self._commit()
        else:
            self._notify()
        return True

    def stop_timer(self) -> int:
        """Stop the running timer and return the minutes logged (rounded)."""
        if self.active_timer_task_id is None or self._active_timer_start is None:
            return 0
        task_id = self.active_timer_task_id
        elapsed = math.floor((self._clock() - self._active_timer_start) / 60 + 0.5)
        self.active_timer_task_id = None
        self._active_timer_start = None
        if elapsed > 0 and self.log_time(task_id, elapsed):
            return elapsed
        self._notify()
        return 0

    # ---- Dependencies ----

    def add_blocker(self, task_id: str, blocker_id: str) -> bool:
        task = self.get(task_id)
        if task is None or self.get(blocker_id) is None:
            return False
        if task_id == blocker_id or blocker_id in task.blocked_by:
            return False
        self._snapshot("Add blocker")
        task.blocked_by.append(blocker_id)
        task.updated_at = now_iso()
        self._commit()
        return True

    def remove_blocker(self, task_id: str, blocker_id: str) -> bool:
        task = self.get(task_id)
        if task is None or blocker_id not in task.blocked_by:
            return False
        self._snapshot("Remove blocker")
        task.blocked_by.remove(blocker_id)
        task.updated_at = now_iso()
        self._commit()
        return True

    def is_blocked(self, task_id: str) -> bool:
        """True iff some blocker still exists and is neither done nor archived."""
        task = self.get(task_id)
        if task is None:
            return False
        for bid in task.blocked_by:
            blocker = self.get(bid)
            if blocker is not None and blocker.status not in ("done", "archived"):
                return True
        return False

    def get_unblocked_tasks(self, task_id: str) -> list[str]:
        return [t.id for t in self.tasks if task_id in t.blocked_by and not self.is_blocked(t.id)]

    # ---- Queries ----

    def get(self, task_id: str) -> Task | None:
        return next((t for t in self.tasks if t.id == task_id), None)

    def resolve(self, partial: str | None) -> Task:
        """Find the single task whose id starts with ``partial``.

        Raises:
            ResolveError: no task, or more than one task, matches.
        """
        tid = resolve_id(partial, source_ids=[t.id for t in self.tasks])
        return next(t for t in self.tasks if t.id == tid)

    def get_filtered(self, f: FilterState | None = None) -> list[Task]:
        return filter_tasks(self.tasks, f or FilterState())

    def get_filtered_tree(self, f: FilterState | None = None) -> list[TreeRow]:
        return flatten_tree(self.get_filtered(f))

    def get_by_project(self, project: str) -> list[Task]:
        return [t for t in self.tasks if t.project == project]

    def get_by_date(self, due_date: str) -> list[Task]:
        return [t for t in self.tasks if t.due_date == due_date]

    def find_external(self, source: str, external_id: str) -> Task | None:
        return next((t for t in self.tasks if t.external_source == source and t.external_id == external_id), None)

    def get_projects(self) -> list[str]:
        return sorted({t.project for t in self.tasks if t.project})

    def get_tags(self) -> list[str]:
        return sorted({tag for t in self.tasks for tag in t.tags})

    def get_stats(self) -> dict[str, int]:
        todo = sum(1 for t in self.tasks if t.status == "todo")
        in_progress = sum(1 for t in self.tasks if t.status == "in_progress")
        done = sum(1 for t in self.tasks if t.status == "done")
        return {"total": todo + in_progress + done, "todo": todo, "inProgress": in_progress, "done": done}

    # ---- Persistence ----

    def load(self) -> None:
        self._cancel_pending_save()
        self.tasks = self._file.load()
        self._undo_stack.clear()
        self._redo_stack.clear()
        self._dirty = False

        by_id = {t.id: t for t in self.tasks}
        for tid, issue, related in detect_inconsistencies(by_id):
            logger.warning("Inconsistent task link: %s %s %s", tid, issue, related)
        for cycle in detect_cycles(by_id):
            logger.warning("Cycle in task tree: %s", " -> ".join(cycle))
        self._notify()

    def save(self) -> bool:
        """Write the whole collection now. Returns ``False`` if the write failed."""
        self._cancel_pending_save()
        try:
            self._file.save(self.tasks)
        except OSError as e:
            self._dirty = True
            self.persistence_error = str(e)
            logger.exception("Save failed: %s", self._file.path)
            return False
        self._dirty = False
        self.persistence_error = None
        return True

    def flush(self) -> bool:
        """Persist pending changes immediately, bypassing the debounce."""
        if not self._dirty:
            self._cancel_pending_save()
            return True
        return self.save()

    @property
    def has_pending_save(self) -> bool:
        return self._dirty

    # ---- Undo / Redo ----

    def undo(self) -> bool:
        if not self._undo_stack:
            return False
        entry = self._undo_stack.pop()
        self._redo_stack.append(UndoEntry(description=entry.description, snapshot=copy.deepcopy(self.tasks)))
        self.tasks = entry.snapshot
        self._reconcile_timer()
        self._commit()
        return True

    def redo(self) -> bool:
        if not self._redo_stack:
            return False
        entry = self._redo_stack.pop()
        self._undo_stack.append(UndoEntry(description=entry.description, snapshot=copy.deepcopy(self.tasks)))
        self.tasks = entry.snapshot
        self._reconcile_timer()
        self._commit()
        return True

    def _reconcile_timer(self) -> None:
        if self.active_timer_task_id is not None and self.get(self.active_timer_task_id) is None:
            self.active_timer_task_id = None
            self._active_timer_start = None

    @property
    def undo_count(self) -> int:
        return len(self._undo_stack)

    @property
    def redo_count(self) -> int:
        return len(self._redo_stack)

    @property
    def undo_history(self) -> list[UndoEntry]:
        return list(self._undo_stack)

    # ---- Subscription ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unregisters it."""
        key = self._next_listener_key
        self._next_listener_key += 1
        self._listeners[key] = listener

        def unsubscribe() -> None:
            self._listeners.pop(key, None)

        return unsubscribe

    # ---- 内部ユーティリティ ----

    def _create(
        self,
        title: str,
        *,
        description: str,
        priority: Priority,
        project: str | None,
        tags: list[str] | None,
        due_date: str | None,
        parent_id: str | None,
        recurrence: RecurrenceRule | None,
        estimate_minutes: int | None,
    ) -> Task:
        now = now_iso()
        task = Task(
            id=gen_task_id(),
            title=clip_title(title),
            description=description or "",
            priority=priority,
            project=project,
            tags=list(tags or []),
            due_date=due_date,
            created_at=now,
            updated_at=now,
            order=max((t.order for t in self.tasks), default=-1) + 1,
            parent_id=parent_id,
            recurrence=copy.deepcopy(recurrence),
            estimate_minutes=estimate_minutes,
        )
        self.tasks.append(task)
        if parent_id is not None:
            parent = self.get(parent_id)
            if parent is not None:
                parent.subtask_ids.append(task.id)
                parent.updated_at = now
        return task

    def _detach(self, task: Task, now: str) -> None:
        if task.parent_id is None:
            return
        parent = self.get(task.parent_id)
        if parent is not None:
            parent.subtask_ids = [sid for sid in parent.subtask_ids if sid != task.id]
            parent.updated_at = now
        task.parent_id = None

    @staticmethod
    def _set_status(task: Task, status: Status, now: str) -> None:
        if status == "done" and task.status != "done":
            task.completed_at = now
        elif status != "done":
            task.completed_at = None
        task.status = status

    def _collect_subtree_ids(self, task_id: str) -> set[str]:
        ids = {task_id}
        stack = [task_id]
        while stack:
            cur = self.get(stack.pop())
            if cur is None:
                continue
            for sid in cur.subtask_ids:
                if sid not in ids:
                    ids.add(sid)
                    stack.append(sid)
        return ids

    def _snapshot(self, description: str = "action") -> None:
        self._undo_stack.append(UndoEntry(description=description, snapshot=copy.deepcopy(self.tasks)))
        if len(self._undo_stack) > self.max_undo:
            del self._undo_stack[0]
        self._redo_stack.clear()

    def _commit(self) -> None:
        self._notify()
        self._schedule_save()

    def _notify(self) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener()
            except Exception:
                logger.exception("Subscriber raised")

    def _schedule_save(self, delay: float | None = None) -> None:
        self._dirty = True
        self._cancel_pending_save()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._save_handle = loop.call_later(self.save_debounce if delay is None else delay, self._debounced_save)

    def _debounced_save(self) -> None:
        self._save_handle = None
        if not self._dirty:
            return
        if not self.save():
            self._schedule_save(self.retry_delay)

    def _cancel_pending_save(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
