import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from tsk.core.models import EXTERNAL_SOURCES, PRIORITIES, STATUSES, Task
from tsk.storage.task_store import TaskStore
from tsk.util.logger import setup_logger

logger = setup_logger("tsk")

SYNC_TIMEOUT_SECONDS = 10.0


@dataclass
class ExternalTask:
    """A task as a sync provider sees it, already mapped to local field names."""

    external_id: str
    title: str
    description: str = ""
    status: str = "todo"
    priority: str = "none"
    project: str | None = None
    tags: list[str] = field(default_factory=list)
    due_date: str | None = None
    updated_at: str = ""


class SyncProvider(Protocol):
    name: str

    async def pull(self) -> list[Any]: ...

    async def push(self, tasks: list[Task]) -> None: ...

    def map_to_local(self, item: Any) -> ExternalTask: ...

    def map_to_external(self, task: Task) -> Any: ...


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    pushed: int = 0
    errors: list[str] = field(default_factory=list)


class SyncEngine:
    """Pull from a provider into the store, then push the provider's tasks back.

    Conflicts are last-write-wins on ``updated_at``.
    """

    def __init__(self, store: TaskStore, provider: SyncProvider, *, timeout: float = SYNC_TIMEOUT_SECONDS) -> None:
        if provider.name not in EXTERNAL_SOURCES:
            _msg = f"Unknown sync source: {provider.name} (expected one of {EXTERNAL_SOURCES})"
            raise ValueError(_msg)
        self.store = store
        self.provider = provider
        self.timeout = timeout

    async def sync(self) -> SyncResult:
        result = SyncResult()
        source = self.provider.name

        try:
            items = await asyncio.wait_for(self.provider.pull(), timeout=self.timeout)
        except TimeoutError:
            result.errors.append(f"{source}: pull timed out after {self.timeout}s")
            return result
        except Exception as e:
            logger.exception("Sync pull failed: %s", source)
            result.errors.append(f"{source}: pull failed: {e}")
            return result

        for item in items:
            try:
                ext = self.provider.map_to_local(item)
            except Exception as e:
                result.errors.append(f"{source}: cannot map item: {e}")
                continue
            self._apply(ext, result)

        local = [t for t in self.store.tasks if t.external_source == source]
        try:
            await asyncio.wait_for(self.provider.push(local), timeout=self.timeout)
            result.pushed = len(local)
        except TimeoutError:
            result.errors.append(f"{source}: push timed out after {self.timeout}s")
        except Exception as e:
            logger.exception("Sync push failed: %s", source)
            result.errors.append(f"{source}: push failed: {e}")

        if not self.store.flush():
            result.errors.append(f"save failed: {self.store.persistence_error}")
        logger.info(
            "Synced %s: %d created, %d updated, %d pushed, %d error(s)",
            source,
            result.created,
            result.updated,
            result.pushed,
            len(result.errors),
        )
        return result

    def _apply(self, ext: ExternalTask, result: SyncResult) -> None:
        source = self.provider.name
        if ext.status not in STATUSES:
            ext.status = "todo"
        if ext.priority not in PRIORITIES:
            ext.priority = "none"
        existing = self.store.find_external(source, ext.external_id)
        if existing is None:
            task = self.store.add_task(
                ext.title,
                description=ext.description,
                priority=ext.priority,  # type: ignore[arg-type]
                project=ext.project,
                tags=ext.tags,
                due_date=ext.due_date,
            )
            if task is None:
                result.errors.append(f"{source}: cannot create {ext.external_id}")
                return
            self.store.update_task(task.id, external_id=ext.external_id, external_source=source, status=ext.status)
            result.created += 1
            return

        # ローカルの方が新しければ何もしない
        if ext.updated_at and ext.updated_at <= existing.updated_at:
            return
        updated = self.store.update_task(
            existing.id,
            title=ext.title,
            description=ext.description,
            priority=ext.priority,
            project=ext.project,
            tags=ext.tags,
            due_date=ext.due_date,
            status=ext.status,
        )
        if updated is None:
            result.errors.append(f"{source}: cannot update {ext.external_id}")
            return
        result.updated += 1
