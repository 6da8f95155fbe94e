from tsk.core.models import Task

WHITE = 0
GRAY = 1
BLACK = 2


def detect_cycles(tasks: dict[str, Task]) -> list[list[str]]:
    """Detect all cycles in the parent graph using DFS over ``subtask_ids``.

    Returns a list of cycles, where each cycle is represented as a list of task IDs.
    """
    cycles: list[list[str]] = []
    color: dict[str, int] = dict.fromkeys(tasks.keys(), WHITE)

    def dfs(u: str, path: list[str]) -> None:
        if color[u] == GRAY:
            cycle_start = path.index(u)
            cycles.append([*path[cycle_start:], u])
            return
        if color[u] == BLACK:
            return

        color[u] = GRAY
        path.append(u)
        for child_id in tasks[u].subtask_ids:
            if child_id in tasks:
                dfs(child_id, path[:])
        color[u] = BLACK

    for tid in tasks:
        if color[tid] == WHITE:
            dfs(tid, [])

    return cycles


def detect_inconsistencies(tasks: dict[str, Task]) -> list[tuple[str, str, str]]:
    """Detect parent/subtask links that do not agree with each other.

    Returns a list of (task_id, issue_type, related_id) tuples.
    issue_type can be:
    - "missing_parent": task_id has parent_id related_id but related_id does not exist
    - "missing_child": task_id has parent_id related_id but related_id does not list it in subtask_ids
    - "dangling_subtask": task_id lists related_id in subtask_ids but related_id does not exist
    - "wrong_parent": task_id lists related_id in subtask_ids but related_id has a different parent_id
    """
    inconsistencies: list[tuple[str, str, str]] = []

    for tid, t in tasks.items():
        if t.parent_id is not None:
            parent = tasks.get(t.parent_id)
            if parent is None:
                inconsistencies.append((tid, "missing_parent", t.parent_id))
            elif tid not in parent.subtask_ids:
                inconsistencies.append((tid, "missing_child", t.parent_id))

        for child_id in t.subtask_ids:
            child = tasks.get(child_id)
            if child is None:
                inconsistencies.append((tid, "dangling_subtask", child_id))
            elif child.parent_id != tid:
                inconsistencies.append((tid, "wrong_parent", child_id))

    return inconsistencies
