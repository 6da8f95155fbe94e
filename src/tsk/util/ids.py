import uuid
from collections.abc import Iterable

from tsk.core.errors import ResolveError


def gen_task_id() -> str:
    return str(uuid.uuid4())


def gen_note_id() -> str:
    return str(uuid.uuid4())


def resolve_id(partial: str | None, *, source_ids: Iterable[str]) -> str:
    """Resolve a (possibly shortened) task id.

    The reference resolves only when exactly one id starts with it.

    Raises:
        ResolveError: the reference is blank, unknown, or ambiguous.
    """
    if partial is None or not str(partial).strip():
        _msg = "Task ID cannot be empty"
        raise ResolveError(_msg)
    s = str(partial).strip()
    candidates = [tid for tid in source_ids if tid.startswith(s)]
    if len(candidates) == 1:
        return candidates[0]
    if len(candidates) == 0:
        _msg = f'Task not found: "{s}"'
        raise ResolveError(_msg)
    _msg = f'Ambiguous ID "{s}" matches {len(candidates)} tasks'
    raise ResolveError(_msg)


def resolve_ids(s: str, *, source_ids: Iterable[str], sep: str = ",") -> list[str]:
    ids = list(source_ids)
    return [resolve_id(part, source_ids=ids) for part in s.split(sep)]


def short_id(task_id: str, length: int = 8) -> str:
    return task_id[:length]


def gen_command_id() -> str:
    return f"cmd-{uuid.uuid4().hex[:12]}"
