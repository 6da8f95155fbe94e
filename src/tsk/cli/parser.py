# ruff: noqa: C901, T201

import argparse
import asyncio
import json
import sys

from tsk.bridge.agent_bridge import AgentEvent
from tsk.bridge.protocol import AGENT_SOURCES, COMMAND_KINDS
from tsk.context import AppContext
from tsk.core.errors import TskError
from tsk.core.models import (
    DUE_WINDOWS,
    FREQUENCIES,
    PRIORITIES,
    SORT_FIELDS,
    STATUSES,
    FilterState,
    RecurrenceRule,
    TreeNode,
)
from tsk.core.validate import detect_cycles, detect_inconsistencies
from tsk.io.export import EXPORT_FORMATS, export_tasks, write_export
from tsk.io.std_io import format_row, print_task
from tsk.util.ids import short_id
from tsk.util.logger import setup_logger, setup_mode
from tsk.util.time import is_valid_date

logger = setup_logger("tsk")


def _check_date(s: str | None) -> str | None:
    if s is None or s == "":
        return None
    if not is_valid_date(s):
        _msg = f"Invalid date: {s} (expected YYYY-MM-DD)"
        raise TskError(_msg)
    return s[:10]


def _save(ctx: AppContext) -> int:
    if not ctx.store.flush():
        print(f"Error: failed to save: {ctx.store.persistence_error}")
        return 1
    return 0


def cmd_add(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    parent_id = st.resolve(args.parent).id if args.parent else None
    recurrence = None
    if args.recur:
        recurrence = RecurrenceRule(
            frequency=args.recur,
            interval=max(1, args.interval),
            end_date=_check_date(args.until),
        )
    t = st.add_task(
        args.title,
        description=args.description or "",
        priority=args.priority,
        project=args.project,
        tags=args.tag or [],
        due_date=_check_date(args.due),
        parent_id=parent_id,
        recurrence=recurrence,
        estimate_minutes=args.estimate,
    )
    if t is None:
        print("Error: failed to add task")
        return 1
    if _save(ctx) != 0:
        return 1
    print(t.id)
    return 0


def _check_due(s: str | None) -> str | None:
    if s is None or s in DUE_WINDOWS:
        return s
    return _check_date(s)


def _filter_from_args(args: argparse.Namespace) -> FilterState:
    return FilterState(
        status=args.status or "all",
        priority=args.priority or "all",
        project=args.project,
        tag=args.tag,
        search=args.search or "",
        sort_by=args.sort,
        sort_direction="asc" if args.asc else "desc",
        show_subtasks=not args.flat,
        due=_check_due(args.due),
    )


def cmd_list(ctx: AppContext, args: argparse.Namespace) -> int:
    f = _filter_from_args(args)
    if args.flat:
        for t in ctx.store.get_filtered(f):
            print(f"{short_id(t.id)} [{t.status}] {t.title}")
        return 0
    for row in ctx.store.get_filtered_tree(f):
        print(format_row(row))
    return 0


def cmd_search(ctx: AppContext, args: argparse.Namespace) -> int:
    for row in ctx.store.get_filtered_tree(FilterState(search=args.query)):
        print(format_row(row))
    return 0


def cmd_show(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    print_task(t, progress=st.get_progress(t.id), blocked=st.is_blocked(t.id))
    for sub in st.get_subtasks(t.id):
        print(f"  - {short_id(sub.id)} [{sub.status}] {sub.title}")
    return 0


def cmd_edit(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    updates: dict[str, object] = {}
    if args.title is not None:
        updates["title"] = args.title
    if args.description is not None:
        updates["description"] = args.description
    if args.priority is not None:
        updates["priority"] = args.priority
    if args.status is not None:
        updates["status"] = args.status
    # 空文字はクリア
    if args.project is not None:
        updates["project"] = args.project or None
    if args.due is not None:
        updates["due_date"] = _check_date(args.due)
    if args.tags is not None:
        updates["tags"] = [x.strip() for x in args.tags.split(",") if x.strip()]
    if not updates:
        print("Nothing to update")
        return 0
    if st.update_task(t.id, **updates) is None:
        print(f"Error: failed to update {t.id}")
        return 1
    return _save(ctx)


def cmd_done(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    if t.status == "done":
        print(f"already done: {t.title}")
        return 0
    if t.recurrence is not None:
        nxt = st.complete_recurring(t.id)
        if t.status != "done":
            print(f"Error: cannot compute next occurrence of {short_id(t.id)}")
            return 1
        if nxt is not None:
            print(f"next occurrence: {short_id(nxt.id)} due {nxt.due_date}")
    else:
        st.move_to_status(t.id, "done")
    for uid in st.get_unblocked_tasks(t.id):
        u = st.get(uid)
        if u is not None:
            print(f"unblocked: {short_id(u.id)} {u.title}")
    return _save(ctx)


def cmd_start(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    if not st.move_to_status(t.id, "in_progress"):
        print(f"Error: failed to start {t.id}")
        return 1
    return _save(ctx)


def cmd_archive(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    if t.status == "archived":
        print(f"already archived: {t.title}")
        return 0
    if not st.move_to_status(t.id, "archived"):
        print(f"Error: failed to archive {t.id}")
        return 1
    print(f"archived: {t.title}")
    return _save(ctx)


def _count_nodes(nodes: list[TreeNode]) -> int:
    return sum(1 + _count_nodes(n.children) for n in nodes)


def cmd_rm(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    count = _count_nodes(st.get_task_tree(t.id))
    if not st.delete_task(t.id):
        print(f"Error: failed to delete {t.id}")
        return 1
    print(f"deleted: {t.title}" + (f" (+{count - 1} subtasks)" if count > 1 else ""))
    return _save(ctx)


def cmd_projects(ctx: AppContext, args: argparse.Namespace) -> int:  # noqa: ARG001
    for p in ctx.store.get_projects():
        print(p)
    return 0


def cmd_tags(ctx: AppContext, args: argparse.Namespace) -> int:  # noqa: ARG001
    for tag in ctx.store.get_tags():
        print(tag)
    return 0


def cmd_subtasks(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    progress = st.get_progress(t.id)
    print(f"{t.title} ({progress['done']}/{progress['total']})")
    for sub in st.get_subtasks(t.id):
        print(f"  {short_id(sub.id)} [{sub.status}] {sub.title}")
    return 0


def cmd_indent(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    parent = st.resolve(args.parent)
    if not st.indent_task(t.id, parent.id):
        print(f"Error: cannot move {short_id(t.id)} under {short_id(parent.id)}")
        return 1
    return _save(ctx)


def cmd_promote(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    if not st.promote_subtask(t.id):
        print(f"Error: {short_id(t.id)} is not a subtask")
        return 1
    return _save(ctx)


def cmd_estimate(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    st.set_estimate(t.id, args.minutes if args.minutes > 0 else None)
    return _save(ctx)


def cmd_log(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    if args.minutes <= 0:
        print("Error: minutes must be positive")
        return 1
    st.log_time(t.id, args.minutes)
    return _save(ctx)


def cmd_block(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    blocker = st.resolve(args.blocker)
    if not st.add_blocker(t.id, blocker.id):
        print(f"Error: cannot block {short_id(t.id)} on {short_id(blocker.id)}")
        return 1
    return _save(ctx)


def cmd_unblock(ctx: AppContext, args: argparse.Namespace) -> int:
    st = ctx.store
    t = st.resolve(args.id)
    blocker = st.resolve(args.blocker)
    if not st.remove_blocker(t.id, blocker.id):
        print(f"Error: {short_id(t.id)} is not blocked by {short_id(blocker.id)}")
        return 1
    return _save(ctx)


def cmd_export(ctx: AppContext, args: argparse.Namespace) -> int:
    f = FilterState(status=list(STATUSES)) if args.all else FilterState()
    tasks = ctx.store.get_filtered(f)
    if args.output:
        write_export(tasks, args.format, args.output)
        print(f"exported {len(tasks)} tasks to {args.output}")
    else:
        sys.stdout.write(export_tasks(tasks, args.format))
    return 0


def cmd_check(ctx: AppContext, args: argparse.Namespace) -> int:  # noqa: ARG001
    by_id = {t.id: t for t in ctx.store.tasks}
    issues = detect_inconsistencies(by_id)
    cycles = detect_cycles(by_id)
    for tid, issue, related in issues:
        print(f"{issue}: {tid} -> {related}")
    for cycle in cycles:
        print(f"cycle: {' -> '.join(cycle)}")
    if not issues and not cycles:
        print("OK")
        return 0
    return 1


def _print_event(ev: AgentEvent) -> None:
    print(f"[{ev.status}] {ev.command}: {ev.summary}")


async def _run_agent(ctx: AppContext, *, once: bool) -> None:
    bridge = ctx.bridge
    bridge.on_event(_print_event)
    if once:
        await ctx.mailbox.ensure()
        n = await bridge.process_inbox()
        print(f"processed {n} command(s)")
        return
    await bridge.start()
    print(f"watching {ctx.mailbox.inbox_path} (Ctrl-C to stop)")
    try:
        await asyncio.Event().wait()
    finally:
        bridge.stop()
        await bridge.drain()
        ctx.store.flush()


def cmd_agent_run(ctx: AppContext, args: argparse.Namespace) -> int:
    try:
        asyncio.run(_run_agent(ctx, once=args.once))
    except KeyboardInterrupt:
        print("stopped")
    return 0


def cmd_agent_send(ctx: AppContext, args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as e:
        print(f"Error: invalid payload JSON: {e}")
        return 1
    if not isinstance(payload, dict):
        print("Error: payload must be a JSON object")
        return 1
    cid = asyncio.run(ctx.bridge.send(args.kind, payload, source=args.source, command_id=args.id))
    print(cid)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tsk", description="task manager with an agent mailbox")
    p.add_argument("--debug", action="store_true", help="verbose logging to stderr")
    sub = p.add_subparsers(dest="cmd", required=True)

    # add
    sp = sub.add_parser("add", help="add a task")
    sp.add_argument("title")
    sp.add_argument("--description")
    sp.add_argument("--priority", choices=PRIORITIES, default="none")
    sp.add_argument("--project")
    sp.add_argument("--tag", action="append", help="repeatable")
    sp.add_argument("--due", help="YYYY-MM-DD")
    sp.add_argument("--parent", help="parent task id (prefix)")
    sp.add_argument("--estimate", type=int, help="minutes")
    sp.add_argument("--recur", choices=FREQUENCIES)
    sp.add_argument("--interval", type=int, default=1)
    sp.add_argument("--until", help="last date of the series")
    sp.set_defaults(func=cmd_add)

    # list
    sp = sub.add_parser("list", help="list tasks")
    sp.add_argument("--status", action="append", choices=STATUSES)
    sp.add_argument("--priority", action="append", choices=PRIORITIES)
    sp.add_argument("--project")
    sp.add_argument("--tag")
    sp.add_argument("--search")
    sp.add_argument("--sort", choices=SORT_FIELDS, default="priority")
    sp.add_argument("--asc", action="store_true")
    sp.add_argument("--flat", action="store_true", help="no tree, subtasks hidden")
    sp.add_argument("--due", help="today, overdue, week or YYYY-MM-DD")
    sp.set_defaults(func=cmd_list)

    sp = sub.add_parser("search", help="search title, description, project, tags and notes")
    sp.add_argument("query")
    sp.set_defaults(func=cmd_search)

    sp = sub.add_parser("show", help="show task")
    sp.add_argument("id")
    sp.set_defaults(func=cmd_show)

    # edit
    sp = sub.add_parser("edit", help="update fields of a task")
    sp.add_argument("id")
    sp.add_argument("--title")
    sp.add_argument("--description")
    sp.add_argument("--priority", choices=PRIORITIES)
    sp.add_argument("--status", choices=STATUSES)
    sp.add_argument("--project", help='"" clears')
    sp.add_argument("--due", help='YYYY-MM-DD, "" clears')
    sp.add_argument("--tags", help="comma separated, replaces all tags")
    sp.set_defaults(func=cmd_edit)

    for name, func, helptext in (
        ("done", cmd_done, "mark done"),
        ("start", cmd_start, "mark in progress"),
        ("archive", cmd_archive, "archive a task"),
        ("rm", cmd_rm, "delete a task and its subtasks"),
        ("subtasks", cmd_subtasks, "list subtasks with progress"),
        ("promote", cmd_promote, "make a subtask top level"),
    ):
        sp = sub.add_parser(name, help=helptext)
        sp.add_argument("id")
        sp.set_defaults(func=func)

    sp = sub.add_parser("projects", help="list projects")
    sp.set_defaults(func=cmd_projects)
    sp = sub.add_parser("tags", help="list tags")
    sp.set_defaults(func=cmd_tags)

    sp = sub.add_parser("indent", help="move a task under another task")
    sp.add_argument("id")
    sp.add_argument("parent")
    sp.set_defaults(func=cmd_indent)

    # time tracking
    sp = sub.add_parser("estimate", help="set estimate in minutes (0 clears)")
    sp.add_argument("id")
    sp.add_argument("minutes", type=int)
    sp.set_defaults(func=cmd_estimate)

    sp = sub.add_parser("log", help="log spent minutes")
    sp.add_argument("id")
    sp.add_argument("minutes", type=int)
    sp.set_defaults(func=cmd_log)

    # dependencies
    sp = sub.add_parser("block", help="ID waits for BLOCKER")
    sp.add_argument("id")
    sp.add_argument("blocker")
    sp.set_defaults(func=cmd_block)

    sp = sub.add_parser("unblock", help="remove a blocker")
    sp.add_argument("id")
    sp.add_argument("blocker")
    sp.set_defaults(func=cmd_unblock)

    # export
    sp = sub.add_parser("export", help="export tasks")
    sp.add_argument("format", choices=EXPORT_FORMATS)
    sp.add_argument("-o", "--output", help="file path (stdout if omitted)")
    sp.add_argument("--all", action="store_true", help="include archived tasks")
    sp.set_defaults(func=cmd_export)

    sp = sub.add_parser("check", help="check subtask links for cycles and inconsistencies")
    sp.set_defaults(func=cmd_check)

    # agent
    agent = sub.add_parser("agent", help="agent mailbox")
    agent_sub = agent.add_subparsers(dest="agent_cmd", required=True)

    sp = agent_sub.add_parser("run", help="process the inbox (poll until Ctrl-C)")
    sp.add_argument("--once", action="store_true", help="process one batch and exit")
    sp.set_defaults(func=cmd_agent_run)

    sp = agent_sub.add_parser("send", help="queue a command in the inbox")
    sp.add_argument("kind", choices=COMMAND_KINDS)
    sp.add_argument("payload", nargs="?", help="JSON object")
    sp.add_argument("--source", choices=AGENT_SOURCES, default="custom")
    sp.add_argument("--id", help="command id (generated if omitted)")
    sp.set_defaults(func=cmd_agent_send)

    return p


def main(argv: list[str] | None = None, ctx: AppContext | None = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.debug:
        setup_mode(is_debug=True)
    ctx = ctx if ctx is not None else AppContext.from_env()
    try:
        return args.func(ctx, args)  # type: ignore[no-any-return]
    except (TskError, FileExistsError, ValueError) as e:
        logger.debug("Command %s failed: %s", args.cmd, e)
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
