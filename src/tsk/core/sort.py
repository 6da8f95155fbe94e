from datetime import date
from functools import cmp_to_key

from tsk.core.models import PRIORITY_WEIGHT, FilterState, Task, TreeNode, TreeRow
from tsk.util.time import is_due_this_week, is_due_today, is_overdue, parse_date


def _cmp(a: object, b: object) -> int:
    return (a > b) - (a < b)  # type: ignore[operator]


def _cmp_due(a: str | None, b: str | None) -> int:
    # 期限なしは後ろ
    if a and b:
        return _cmp(a, b)
    if a:
        return -1
    if b:
        return 1
    return 0


def matches_filter(t: Task, f: FilterState) -> bool:
    if f.status == "all":
        if t.status == "archived":
            return False
    elif t.status not in f.status:
        return False
    if f.priority != "all" and t.priority not in f.priority:
        return False
    if f.project is not None and t.project != f.project:
        return False
    if f.tag is not None and f.tag not in t.tags:
        return False
    if f.search:
        q = f.search.lower()
        haystack = " ".join([t.title, t.description, t.project or "", *t.tags, *(n.content for n in t.notes)])
        if q not in haystack.lower():
            return False
    if f.due is not None and not matches_due(t.due_date, f.due):
        return False
    return True


def matches_due(due_date: str | None, window: str, *, now: date | None = None) -> bool:
    """Whether ``due_date`` falls in ``window`` (today, overdue, week, or an exact date)."""
    if not due_date:
        return False
    try:
        match window:
            case "today":
                return is_due_today(due_date, now=now)
            case "overdue":
                return is_overdue(due_date, now=now)
            case "week":
                return is_due_this_week(due_date, now=now)
        return parse_date(due_date) == parse_date(window)
    except ValueError:
        return False


def task_comparator(f: FilterState):  # noqa: ANN201
    only_done = f.status != "all" and list(f.status) == ["done"]
    desc = f.sort_direction == "desc"

    def compare(a: Task, b: Task) -> int:
        # done は末尾へ (done のみを表示している場合を除く)
        if not only_done and (a.status == "done") != (b.status == "done"):
            return 1 if a.status == "done" else -1

        match f.sort_by:
            case "priority":
                c = PRIORITY_WEIGHT[b.priority] - PRIORITY_WEIGHT[a.priority]
                if not desc:
                    c = -c
            case "dueDate":
                c = _cmp_due(a.due_date, b.due_date)
                if desc:
                    c = -c
            case "createdAt":
                c = _cmp(a.created_at, b.created_at)
                if desc:
                    c = -c
            case "title":
                c = _cmp(a.title.casefold(), b.title.casefold()) or _cmp(a.title, b.title)
                if desc:
                    c = -c
            case "order":
                c = a.order - b.order
                if desc:
                    c = -c
            case _:
                c = 0
        if c:
            return c

        return _cmp_due(a.due_date, b.due_date) or _cmp(a.created_at, b.created_at) or _cmp(a.id, b.id)

    return compare


def sort_tasks(tasks: list[Task], f: FilterState) -> list[Task]:
    return sorted(tasks, key=cmp_to_key(task_comparator(f)))


def filter_tasks(tasks: list[Task], f: FilterState) -> list[Task]:
    result = [t for t in tasks if matches_filter(t, f)]
    if not f.show_subtasks:
        result = [t for t in result if t.parent_id is None]
    return sort_tasks(result, f)


def flatten_tree(filtered: list[Task]) -> list[TreeRow]:
    """Parents-before-children rows restricted to ``filtered``.

    ``filtered`` is assumed already sorted; siblings keep that order. A task
    whose parent is not in ``filtered`` is emitted at the top level.
    """
    ids = {t.id for t in filtered}
    children: dict[str | None, list[Task]] = {}
    for t in filtered:
        children.setdefault(t.parent_id if t.parent_id in ids else None, []).append(t)

    top = [t for t in children.get(None, []) if t.parent_id is None]
    orphans = [t for t in children.get(None, []) if t.parent_id is not None]
    rows: list[TreeRow] = []
    seen: set[str] = set()

    def walk(siblings: list[Task], depth: int) -> None:
        for i, t in enumerate(siblings):
            if t.id in seen:
                continue
            seen.add(t.id)
            rows.append(TreeRow(task=t, depth=depth, is_last=i == len(siblings) - 1))
            walk(children.get(t.id, []), depth + 1)

    walk(top + orphans, 0)

    # (念の為) 循環などで辿れなかったタスクも落とさない
    rest = [t for t in filtered if t.id not in seen]
    walk(rest, 0)
    return rows


def build_tree(tasks: list[Task], root_id: str | None = None) -> list[TreeNode]:
    by_parent: dict[str | None, list[Task]] = {}
    for t in tasks:
        by_parent.setdefault(t.parent_id, []).append(t)

    def build(parent_id: str | None, depth: int, seen: frozenset[str]) -> list[TreeNode]:
        return [
            TreeNode(task=t, children=build(t.id, depth + 1, seen | {t.id}), depth=depth)
            for t in by_parent.get(parent_id, [])
            if t.id not in seen
        ]

    if root_id is None:
        return build(None, 0, frozenset())
    root = next((t for t in tasks if t.id == root_id), None)
    if root is None:
        return []
    return [TreeNode(task=root, children=build(root.id, 1, frozenset({root.id})), depth=0)]
