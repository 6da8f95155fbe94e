import json
import random
import tempfile
import unittest
from pathlib import Path

import pytest

from tsk.core.errors import ResolveError
from tsk.core.models import FilterState, RecurrenceRule
from tsk.core.validate import detect_cycles, detect_inconsistencies
from tsk.storage import TaskFile, TaskStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class StoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        """各テストの前に一時ディレクトリを作成"""
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "tasks.json"
        self.clock = FakeClock()
        self.store = TaskStore(TaskFile(self.path), clock=self.clock)
        self.store.load()

    def tearDown(self) -> None:
        """各テストの後に一時ディレクトリを削除"""
        self.tmp.cleanup()

    def assert_tree_consistent(self) -> None:
        by_id = {t.id: t for t in self.store.tasks}
        assert detect_inconsistencies(by_id) == []
        assert detect_cycles(by_id) == []


class TestCrud(StoreTestCase):
    def test_add_update_delete(self) -> None:
        t = self.store.add_task("牛乳を買う", priority="high", tags=["shop"], project="home")
        assert t is not None
        assert self.store.get(t.id) is t
        assert t.status == "todo"

        updated = self.store.update_task(t.id, title="豆乳を買う", project=None)
        assert updated is not None
        assert updated.title == "豆乳を買う"
        assert updated.project is None
        assert updated.tags == ["shop"]

        assert self.store.delete_task(t.id)
        assert self.store.get(t.id) is None
        assert not self.store.delete_task(t.id)

    def test_title_is_clipped(self) -> None:
        t = self.store.add_task("x" * 300)
        assert t is not None
        assert len(t.title) == 200

    def test_add_with_missing_parent(self) -> None:
        assert self.store.add_task("orphan", parent_id="nope") is None
        assert self.store.tasks == []
        assert self.store.undo_count == 0

    def test_update_rejects_unknown_field(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        before = self.store.undo_count
        assert self.store.update_task(t.id, owner="me") is None
        assert self.store.undo_count == before
        assert not hasattr(t, "owner")

    def test_update_invalid_status(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        before = self.store.undo_count
        assert self.store.update_task(t.id, status="waiting") is None
        assert self.store.undo_count == before
        assert self.store.update_task("missing", title="x") is None

    def test_status_change_keeps_completed_at_consistent(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        assert self.store.toggle_done(t.id)
        assert t.status == "done"
        assert t.completed_at is not None
        assert self.store.toggle_done(t.id)
        assert t.status == "todo"
        assert t.completed_at is None
        self.store.update_task(t.id, status="done")
        assert t.completed_at is not None
        assert self.store.move_to_status(t.id, "in_progress")
        assert t.completed_at is None

    def test_order_and_reorder(self) -> None:
        a = self.store.add_task("a")
        b = self.store.add_task("b")
        c = self.store.add_task("c")
        assert a is not None and b is not None and c is not None
        assert (a.order, b.order, c.order) == (0, 1, 2)
        assert self.store.reorder(c.id, "up")
        assert (a.order, c.order, b.order) == (0, 1, 2)
        assert not self.store.reorder(a.id, "up")
        assert not self.store.reorder("missing", "down")

    def test_notes(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        note = self.store.add_note(t.id, "memo")
        assert note is not None
        assert note.source == "user"
        assert t.notes == [note]
        assert self.store.delete_note(t.id, note.id)
        assert t.notes == []
        assert not self.store.delete_note(t.id, note.id)
        assert self.store.add_note("missing", "x") is None


class TestSubtasks(StoreTestCase):
    def _family(self) -> tuple[str, str, str]:
        p = self.store.add_task("parent")
        assert p is not None
        c = self.store.add_subtask(p.id, "child")
        assert c is not None
        g = self.store.add_subtask(c.id, "grandchild")
        assert g is not None
        return p.id, c.id, g.id

    def test_links_both_ways(self) -> None:
        p, c, g = self._family()
        assert self.store.get(p).subtask_ids == [c]  # type: ignore[union-attr]
        assert self.store.get(c).parent_id == p  # type: ignore[union-attr]
        assert self.store.ancestor_ids(g) == [c, p]
        assert [t.id for t in self.store.get_top_level_tasks()] == [p]
        self.assert_tree_consistent()

    def test_cascade_delete(self) -> None:
        p, c, g = self._family()
        other = self.store.add_task("other")
        assert other is not None
        assert self.store.delete_task(p)
        assert [t.id for t in self.store.tasks] == [other.id]

    def test_delete_child_unlinks_from_parent(self) -> None:
        p, c, g = self._family()
        assert self.store.delete_task(c)
        assert self.store.get(p).subtask_ids == []  # type: ignore[union-attr]
        assert self.store.get(g) is None
        self.assert_tree_consistent()

    def test_remove_subtask_requires_link(self) -> None:
        p, c, g = self._family()
        assert not self.store.remove_subtask(p, g)
        assert self.store.remove_subtask(c, g)
        assert self.store.get(g) is None

    def test_indent_refuses_cycles(self) -> None:
        p, c, g = self._family()
        assert not self.store.indent_task(p, g)
        assert not self.store.indent_task(p, c)
        assert not self.store.indent_task(p, p)
        assert not self.store.indent_task(c, p)  # 既に直下
        assert not self.store.indent_task("missing", p)
        self.assert_tree_consistent()

    def test_indent_and_promote(self) -> None:
        p, c, g = self._family()
        assert self.store.indent_task(g, p)
        assert self.store.get(g).parent_id == p  # type: ignore[union-attr]
        assert self.store.get(c).subtask_ids == []  # type: ignore[union-attr]
        assert self.store.get(p).subtask_ids == [c, g]  # type: ignore[union-attr]
        assert self.store.promote_subtask(g)
        assert self.store.get(g).parent_id is None  # type: ignore[union-attr]
        assert not self.store.promote_subtask(g)
        self.assert_tree_consistent()

    def test_indent_under_any_descendant_fails(self) -> None:
        rng = random.Random(7)
        for _ in range(5):
            self.store.add_task("root")
        for i in range(25):
            self.store.add_subtask(rng.choice(self.store.tasks).id, f"n{i}")
        by_id = {t.id: t for t in self.store.tasks}

        def descendants(task_id: str) -> list[str]:
            out: list[str] = []
            for sid in by_id[task_id].subtask_ids:
                out += [sid, *descendants(sid)]
            return out

        before = [t.to_dict() for t in self.store.tasks]
        undo_before = self.store.undo_count
        pairs = [(tid, d) for tid in by_id for d in descendants(tid)]
        assert pairs
        for tid, d in pairs:
            assert not self.store.indent_task(tid, d)
        assert [t.to_dict() for t in self.store.tasks] == before
        assert self.store.undo_count == undo_before
        self.assert_tree_consistent()

    def test_progress(self) -> None:
        p, c, g = self._family()
        c2 = self.store.add_subtask(p, "child 2")
        assert c2 is not None
        self.store.toggle_done(c2.id)
        assert self.store.get_progress(p) == {"done": 1, "total": 2}
        assert self.store.get_progress(g) == {"done": 0, "total": 0}

    def test_random_operations_keep_tree_consistent(self) -> None:
        rng = random.Random(20261018)
        for _ in range(300):
            ids = [t.id for t in self.store.tasks]
            op = rng.choice(["add", "add", "sub", "indent", "promote", "delete", "undo"])
            if op == "add" or not ids:
                self.store.add_task(f"t{len(ids)}")
            elif op == "sub":
                self.store.add_subtask(rng.choice(ids), "sub")
            elif op == "indent":
                self.store.indent_task(rng.choice(ids), rng.choice(ids))
            elif op == "promote":
                self.store.promote_subtask(rng.choice(ids))
            elif op == "delete":
                self.store.delete_task(rng.choice(ids))
            else:
                self.store.undo()
            self.assert_tree_consistent()


class TestUndoRedo(StoreTestCase):
    def test_undo_then_redo_restores(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        self.store.update_task(t.id, title="b")
        after = [x.to_dict() for x in self.store.tasks]

        assert self.store.undo()
        assert self.store.get(t.id).title == "a"  # type: ignore[union-attr]
        assert self.store.redo_count == 1
        assert self.store.redo()
        assert [x.to_dict() for x in self.store.tasks] == after

    def test_undo_all_then_redo_all(self) -> None:
        rng = random.Random(50)
        for _ in range(5):
            store = TaskStore(TaskFile(self.path), clock=self.clock)
            store.add_task("seed")
            store.add_task("seed 2")
            initial = [t.to_dict() for t in store.tasks]
            start = store.undo_count
            n = rng.randint(1, 48)
            while store.undo_count - start < n:
                ids = [t.id for t in store.tasks]
                op = rng.choice(["add", "sub", "update", "toggle", "indent", "promote", "delete", "estimate"])
                tid = rng.choice(ids) if ids else None
                if op == "add" or tid is None:
                    store.add_task(f"t{rng.randint(0, 999)}")
                elif op == "sub":
                    store.add_subtask(tid, "sub")
                elif op == "update":
                    store.update_task(tid, title=f"u{rng.randint(0, 999)}", priority="high")
                elif op == "toggle":
                    store.toggle_done(tid)
                elif op == "indent":
                    store.indent_task(tid, rng.choice(ids))
                elif op == "promote":
                    store.promote_subtask(tid)
                elif op == "delete":
                    store.delete_task(tid)
                else:
                    store.set_estimate(tid, rng.randint(1, 120))
            final = [t.to_dict() for t in store.tasks]

            for _ in range(n):
                assert store.undo()
            assert [t.to_dict() for t in store.tasks] == initial
            for _ in range(n):
                assert store.redo()
            assert [t.to_dict() for t in store.tasks] == final
            assert not store.redo()

    def test_undo_delete_restores_subtree(self) -> None:
        p = self.store.add_task("p")
        assert p is not None
        c = self.store.add_subtask(p.id, "c")
        assert c is not None
        self.store.delete_task(p.id)
        assert self.store.undo()
        assert {t.id for t in self.store.tasks} == {p.id, c.id}
        self.assert_tree_consistent()

    def test_new_mutation_clears_redo(self) -> None:
        self.store.add_task("a")
        self.store.undo()
        assert self.store.redo_count == 1
        self.store.add_task("b")
        assert self.store.redo_count == 0
        assert not self.store.redo()

    def test_empty_stacks(self) -> None:
        assert not self.store.undo()
        assert not self.store.redo()

    def test_depth_is_bounded(self) -> None:
        store = TaskStore(TaskFile(self.path), max_undo=5)
        for i in range(8):
            store.add_task(f"t{i}")
        assert store.undo_count == 5
        while store.undo():
            pass
        assert len(store.tasks) == 3

    def test_history_descriptions(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        self.store.toggle_done(t.id)
        assert [e.description for e in self.store.undo_history] == ["Add task", "Toggle done"]


class TestRecurrence(StoreTestCase):
    def test_complete_monthly_clamps(self) -> None:
        t = self.store.add_task(
            "家賃",
            due_date="2026-01-31",
            project="home",
            recurrence=RecurrenceRule(frequency="monthly"),
        )
        assert t is not None
        before = self.store.undo_count
        nxt = self.store.complete_recurring(t.id)
        assert nxt is not None
        assert t.status == "done"
        assert nxt.status == "todo"
        assert nxt.due_date == "2026-02-28"
        assert nxt.project == "home"
        assert nxt.recurrence is not None
        assert nxt.recurrence.next_due == "2026-02-28"
        assert nxt.recurrence is not t.recurrence
        assert self.store.undo_count == before + 1

        self.store.undo()
        assert len(self.store.tasks) == 1
        assert self.store.tasks[0].status == "todo"

    def test_series_ends(self) -> None:
        t = self.store.add_task(
            "daily",
            due_date="2026-03-10",
            recurrence=RecurrenceRule(frequency="daily", end_date="2026-03-10"),
        )
        assert t is not None
        assert self.store.complete_recurring(t.id) is None
        assert t.status == "done"
        assert len(self.store.tasks) == 1

    def test_bad_due_date_changes_nothing(self) -> None:
        t = self.store.add_task("weekly", recurrence=RecurrenceRule(frequency="weekly"))
        assert t is not None
        t.due_date = "soon"
        before = self.store.undo_count
        assert self.store.complete_recurring(t.id) is None
        assert t.status == "todo"
        assert t.completed_at is None
        assert self.store.undo_count == before
        assert len(self.store.tasks) == 1

    def test_not_recurring(self) -> None:
        t = self.store.add_task("once")
        assert t is not None
        assert self.store.complete_recurring(t.id) is None
        assert t.status == "todo"

    def test_subtask_occurrence_keeps_parent(self) -> None:
        p = self.store.add_task("p")
        assert p is not None
        c = self.store.add_subtask(p.id, "weekly", due_date="2026-01-05", recurrence=RecurrenceRule(frequency="weekly"))
        assert c is not None
        nxt = self.store.complete_recurring(c.id)
        assert nxt is not None
        assert nxt.parent_id == p.id
        assert nxt.id in p.subtask_ids
        self.assert_tree_consistent()


class TestTimeTracking(StoreTestCase):
    def test_timer_rounds_to_minutes(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        assert self.store.start_timer(t.id)
        assert t.status == "in_progress"
        assert not self.store.start_timer(t.id)
        self.clock.now += 90
        assert self.store.stop_timer() == 2
        assert t.actual_minutes == 2
        assert self.store.active_timer_task_id is None
        assert self.store.stop_timer() == 0

    def test_short_timer_logs_nothing(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        self.store.start_timer(t.id)
        self.clock.now += 20
        assert self.store.stop_timer() == 0
        assert t.actual_minutes is None

    def test_switching_timer_logs_previous(self) -> None:
        a = self.store.add_task("a")
        b = self.store.add_task("b")
        assert a is not None and b is not None
        self.store.start_timer(a.id)
        self.clock.now += 600
        assert self.store.start_timer(b.id)
        assert a.actual_minutes == 10
        assert self.store.active_timer_task_id == b.id

    def test_estimate_and_log(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        assert self.store.set_estimate(t.id, 45)
        assert self.store.log_time(t.id, 10)
        assert self.store.log_time(t.id, 5)
        assert (t.estimate_minutes, t.actual_minutes) == (45, 15)
        assert not self.store.log_time("missing", 1)

    def test_deleting_timed_task_clears_timer(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        self.store.start_timer(t.id)
        self.store.delete_task(t.id)
        assert self.store.active_timer_task_id is None

    def test_undo_past_timed_task_clears_timer(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        assert self.store.start_timer(t.id)
        assert self.store.undo()
        assert self.store.active_timer_task_id == t.id
        assert self.store.undo()
        assert self.store.get(t.id) is None
        assert self.store.active_timer_task_id is None
        assert self.store.stop_timer() == 0


class TestBlockers(StoreTestCase):
    def test_blocking(self) -> None:
        a = self.store.add_task("a")
        b = self.store.add_task("b")
        assert a is not None and b is not None
        assert not self.store.add_blocker(a.id, a.id)
        assert not self.store.add_blocker(a.id, "missing")
        assert self.store.add_blocker(a.id, b.id)
        assert not self.store.add_blocker(a.id, b.id)
        assert self.store.is_blocked(a.id)

        self.store.move_to_status(b.id, "done")
        assert not self.store.is_blocked(a.id)
        assert self.store.get_unblocked_tasks(b.id) == [a.id]

        assert self.store.remove_blocker(a.id, b.id)
        assert not self.store.remove_blocker(a.id, b.id)

    def test_deleted_blocker_does_not_block(self) -> None:
        a = self.store.add_task("a")
        b = self.store.add_task("b")
        assert a is not None and b is not None
        self.store.add_blocker(a.id, b.id)
        self.store.delete_task(b.id)
        assert a.blocked_by == [b.id]
        assert not self.store.is_blocked(a.id)


class TestQueries(StoreTestCase):
    def test_resolve(self) -> None:
        t = self.store.add_task("a")
        assert t is not None
        assert self.store.resolve(t.id[:8]) is t
        with pytest.raises(ResolveError, match="Task not found"):
            self.store.resolve("zzzzzzzz-nothing")
        with pytest.raises(ResolveError, match="cannot be empty"):
            self.store.resolve("")

    def test_projects_tags_stats(self) -> None:
        self.store.add_task("a", project="work", tags=["x", "y"])
        self.store.add_task("b", project="home", tags=["y"])
        c = self.store.add_task("c")
        assert c is not None
        self.store.move_to_status(c.id, "archived")
        assert self.store.get_projects() == ["home", "work"]
        assert self.store.get_tags() == ["x", "y"]
        assert self.store.get_stats() == {"total": 2, "todo": 2, "inProgress": 0, "done": 0}

    def test_filtered_tree(self) -> None:
        p = self.store.add_task("p", priority="low")
        assert p is not None
        self.store.add_subtask(p.id, "c", priority="urgent")
        self.store.add_task("q", priority="high")
        rows = self.store.get_filtered_tree(FilterState())
        assert [(r.task.title, r.depth) for r in rows] == [("q", 0), ("p", 0), ("c", 1)]

    def test_by_project_and_date_and_external(self) -> None:
        a = self.store.add_task("a", project="work", due_date="2026-04-01")
        assert a is not None
        self.store.update_task(a.id, external_id="L-1", external_source="linear")
        assert self.store.get_by_project("work") == [a]
        assert self.store.get_by_date("2026-04-01") == [a]
        assert self.store.find_external("linear", "L-1") is a
        assert self.store.find_external("todoist", "L-1") is None


class TestPersistence(StoreTestCase):
    def test_flush_writes_and_reopen_reads(self) -> None:
        t = self.store.add_task("永続化")
        assert t is not None
        assert self.store.has_pending_save
        assert self.store.flush()
        assert not self.store.has_pending_save
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        assert raw[0]["title"] == "永続化"

        reopened = TaskStore.open(self.path)
        assert [x.id for x in reopened.tasks] == [t.id]
        assert reopened.undo_count == 0

    def test_save_failure_is_reported(self) -> None:
        blocker = Path(self.tmp.name) / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        store = TaskStore(TaskFile(blocker / "tasks.json"))
        store.add_task("a")
        assert not store.flush()
        assert store.persistence_error
        assert store.has_pending_save

    def test_subscribers(self) -> None:
        calls: list[int] = []

        def bad() -> None:
            raise RuntimeError("boom")

        unsubscribe = self.store.subscribe(lambda: calls.append(1))
        self.store.subscribe(bad)
        self.store.add_task("a")
        assert calls == [1]
        unsubscribe()
        self.store.add_task("b")
        assert calls == [1]


if __name__ == "__main__":
    unittest.main()
