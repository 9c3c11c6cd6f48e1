"""Tests for the task tree engine (task_engine/engine.py)."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from task_planner.task_engine.engine import DeletePolicy, TaskTree
from task_planner.task_engine.errors import (
    CyclicBlockerError,
    CyclicReparentError,
    GateRejectedError,
    HasChildrenError,
    OwnerMismatchError,
    UnknownTaskError,
    ValidationError,
)
from task_planner.task_engine.model import Task, TaskStatus, is_temp_id
from task_planner.task_engine.ordering import is_contiguous
from task_planner.task_engine.reconcile import ChangeEvent, ChangeKind, MergeOutcome

BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


class _Clock:
    """Deterministic clock advancing one second per call."""

    def __init__(self) -> None:
        self.tick = 0

    def __call__(self) -> str:
        self.tick += 1
        return (BASE + timedelta(seconds=self.tick)).isoformat()


@pytest.fixture
def tree() -> TaskTree:
    return TaskTree("alice", clock=_Clock())


def _add(tree: TaskTree, title: str, parent: str | None = None) -> str:
    return tree.create(title, parent_id=parent).task_id


def _orders(tree: TaskTree, parent: str | None) -> list[tuple[str, int]]:
    return [(t.title, t.sort_order) for t in tree.index.children_of(parent)]


def _all_groups_contiguous(tree: TaskTree) -> bool:
    return all(is_contiguous(group) for group in tree.index.children.values())


# ---------------------------------------------------------------------------
# Create / rename / status
# ---------------------------------------------------------------------------

class TestCreate:
    def test_appends_to_sibling_group(self, tree: TaskTree) -> None:
        _add(tree, "A")
        _add(tree, "B")
        assert _orders(tree, None) == [("A", 0), ("B", 1)]

    def test_defaults(self, tree: TaskTree) -> None:
        mutation = tree.create("  Write tests  ")
        task = mutation.task
        assert task is not None
        assert is_temp_id(task.id)
        assert task.title == "Write tests"
        assert task.status == TaskStatus.TODO
        assert task.force_completed is False
        assert task.created_at == task.updated_at
        assert mutation.created is task
        assert mutation.before == {task.id: None}
        assert mutation.patches == {task.id: {"title": "Write tests", "parent_id": None, "sort_order": 0}}

    def test_child_sort_order_counts_parent_children(self, tree: TaskTree) -> None:
        parent = _add(tree, "P")
        _add(tree, "c0", parent)
        kid = _add(tree, "c1", parent)
        assert tree.require(kid).sort_order == 1

    def test_explicit_sort_order_is_kept(self, tree: TaskTree) -> None:
        tid = tree.create("A", sort_order=5).task_id
        assert tree.require(tid).sort_order == 5

    @pytest.mark.parametrize("title", ["", "   ", None])
    def test_blank_title_rejected(self, tree: TaskTree, title) -> None:
        with pytest.raises(ValidationError) as exc:
            tree.create(title)
        assert exc.value.code == "validation_error"
        assert exc.value.reason == "Task title is required."
        assert tree.tasks() == []

    def test_unknown_parent(self, tree: TaskTree) -> None:
        with pytest.raises(UnknownTaskError):
            tree.create("A", parent_id="missing")

    def test_negative_sort_order(self, tree: TaskTree) -> None:
        with pytest.raises(ValidationError):
            tree.create("A", sort_order=-1)


class TestRenameAndStatus:
    def test_rename(self, tree: TaskTree) -> None:
        tid = _add(tree, "Old")
        before = tree.require(tid)
        mutation = tree.rename(tid, " New ")
        assert tree.require(tid).title == "New"
        assert tree.require(tid).updated_at > before.updated_at
        assert mutation.patches == {tid: {"title": "New"}}

    def test_rename_blank_leaves_tree(self, tree: TaskTree) -> None:
        tid = _add(tree, "Old")
        snap = tree.snapshot()
        with pytest.raises(ValidationError):
            tree.rename(tid, "  ")
        assert tree.snapshot() == snap

    def test_invalid_status(self, tree: TaskTree) -> None:
        tid = _add(tree, "A")
        with pytest.raises(ValidationError) as exc:
            tree.set_status(tid, "finished")
        assert exc.value.details["allowed_statuses"] == TaskStatus.values()

    def test_set_status_clears_force_completed(self, tree: TaskTree) -> None:
        parent = _add(tree, "P")
        _add(tree, "kid", parent)
        tree.complete(parent, force=True)
        mutation = tree.set_status(parent, "in_progress")
        task = tree.require(parent)
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.force_completed is False
        assert mutation.patches[parent] == {"status": "in_progress", "force_completed": False}

    def test_direct_done_is_not_gated_by_default(self, tree: TaskTree) -> None:
        parent = _add(tree, "P")
        _add(tree, "kid", parent)
        tree.set_status(parent, TaskStatus.DONE)
        assert tree.require(parent).is_done

    def test_direct_done_gated_when_configured(self) -> None:
        tree = TaskTree("alice", clock=_Clock(), gate_direct_done=True)
        parent = _add(tree, "P")
        _add(tree, "kid", parent)
        with pytest.raises(GateRejectedError):
            tree.set_status(parent, "done")
        assert tree.require(parent).status == TaskStatus.TODO


# ---------------------------------------------------------------------------
# Completion gate through the engine
# ---------------------------------------------------------------------------

class TestComplete:
    def test_child_todo_blocks_parent(self, tree: TaskTree) -> None:
        x = _add(tree, "X")
        y = _add(tree, "Y", x)
        with pytest.raises(GateRejectedError) as exc:
            tree.complete(x)
        assert exc.value.code == "gate_rejected"
        assert tree.require(x).status == TaskStatus.TODO

        tree.set_status(y, "done")
        tree.complete(x)
        assert tree.require(x).is_done
        assert tree.require(x).force_completed is False

    def test_blocker_named_in_rejection(self, tree: TaskTree) -> None:
        x = _add(tree, "X")
        y = _add(tree, "Write spec")
        tree.set_blocker(x, y)
        with pytest.raises(GateRejectedError) as exc:
            tree.complete(x)
        assert exc.value.reason == "This task is blocked by: Write spec"

        tree.set_status(y, "done")
        tree.complete(x)
        assert tree.require(x).is_done

    def test_force_bypasses_gate(self, tree: TaskTree) -> None:
        x = _add(tree, "X")
        _add(tree, "Y", x)
        blocker = _add(tree, "B")
        tree.set_blocker(x, blocker)
        mutation = tree.complete(x, force=True)
        task = tree.require(x)
        assert task.status == TaskStatus.DONE
        assert task.force_completed is True
        assert mutation.patches == {x: {"status": "done", "force_completed": True}}

    def test_unforced_completion_clears_flag(self, tree: TaskTree) -> None:
        x = _add(tree, "X")
        tree.complete(x, force=True)
        tree.complete(x)
        assert tree.require(x).force_completed is False

    def test_can_complete_reports_reason(self, tree: TaskTree) -> None:
        x = _add(tree, "X")
        _add(tree, "Y", x)
        result = tree.can_complete(x)
        assert not result.allowed
        assert result.reason == "Finish all nested subtasks before completing this task."


# ---------------------------------------------------------------------------
# Blockers and due dates
# ---------------------------------------------------------------------------

class TestBlockerAndDue:
    def test_set_and_clear_blocker(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        b = _add(tree, "B")
        tree.set_blocker(a, b)
        assert tree.require(a).blocking_task_id == b
        mutation = tree.set_blocker(a, None)
        assert tree.require(a).blocking_task_id is None
        assert mutation.patches == {a: {"blocking_task_id": None}}

    @pytest.mark.parametrize("depth", [0, 1, 2])
    def test_cyclic_blocker_leaves_tree(self, tree: TaskTree, depth: int) -> None:
        ids = [_add(tree, "root")]
        for i in range(2):
            ids.append(_add(tree, f"level{i}", ids[-1]))
        snap = tree.snapshot()
        with pytest.raises(CyclicBlockerError) as exc:
            tree.set_blocker(ids[0], ids[depth])
        assert exc.value.code == "cyclic_blocker"
        assert tree.snapshot() == snap

    def test_set_due_normalizes(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        mutation = tree.set_due(a, "2026-05-01T10:00:00Z")
        assert tree.require(a).due_at == "2026-05-01T10:00:00+00:00"
        assert mutation.patches == {a: {"due_at": "2026-05-01T10:00:00+00:00"}}
        tree.set_due(a, None)
        assert tree.require(a).due_at is None

    def test_set_due_accepts_datetime(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        tree.set_due(a, datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc))
        assert tree.require(a).due_at == "2026-06-01T12:00:00+00:00"

    def test_set_due_rejects_garbage(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        with pytest.raises(ValidationError) as exc:
            tree.set_due(a, "next tuesday")
        assert exc.value.reason == "due_at must be null or a valid date-time string."


# ---------------------------------------------------------------------------
# Move
# ---------------------------------------------------------------------------

class TestMove:
    def test_swap_roots(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        b = _add(tree, "B")
        mutation = tree.move(b, None, 0)
        assert tree.require(a).sort_order == 1
        assert tree.require(b).sort_order == 0
        assert set(mutation.patches) == {a, b}
        assert mutation.patches[a] == {"sort_order": 1}

    def test_only_changed_tasks_in_patches(self, tree: TaskTree) -> None:
        ids = [_add(tree, t) for t in "ABCD"]
        mutation = tree.move(ids[3], None, 2)
        assert set(mutation.patches) == {ids[2], ids[3]}
        assert _orders(tree, None) == [("A", 0), ("B", 1), ("D", 2), ("C", 3)]

    def test_noop_move(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        _add(tree, "B")
        mutation = tree.move(a, None, 0)
        assert mutation.is_noop
        assert mutation.patches == {}

    def test_reparent_renumbers_both_groups(self, tree: TaskTree) -> None:
        p = _add(tree, "P")
        q = _add(tree, "Q")
        kids = [_add(tree, f"p{i}", p) for i in range(3)]
        _add(tree, "q0", q)
        mutation = tree.move(kids[0], q, 0)
        assert _orders(tree, p) == [("p1", 0), ("p2", 1)]
        assert _orders(tree, q) == [("p0", 0), ("q0", 1)]
        assert mutation.patches[kids[0]] == {"parent_id": q}
        assert tree.require(kids[0]).parent_id == q

    def test_index_is_clamped(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        _add(tree, "B")
        tree.move(a, None, 99)
        assert _orders(tree, None) == [("B", 0), ("A", 1)]
        tree.move(a, None, -4)
        assert _orders(tree, None) == [("A", 0), ("B", 1)]

    def test_moved_task_gets_new_timestamp(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        b = _add(tree, "B")
        before = tree.require(b).updated_at
        tree.move(b, None, 0)
        assert tree.require(b).updated_at > before
        assert tree.require(a).updated_at > before

    def test_move_under_descendant_rejected(self, tree: TaskTree) -> None:
        x = _add(tree, "X")
        y = _add(tree, "Y", x)
        z = _add(tree, "Z", y)
        snap = tree.snapshot()
        for target in (x, y, z):
            with pytest.raises(CyclicReparentError) as exc:
                tree.move(x, target, 0)
            assert exc.value.reason == "Cannot move a task into one of its nested children."
        assert tree.snapshot() == snap

    def test_round_trip_restores_orders(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        b = _add(tree, "B")
        for i in range(3):
            _add(tree, f"a{i}", a)
        for i in range(2):
            _add(tree, f"b{i}", b)
        original_a = _orders(tree, a)
        original_b = _orders(tree, b)
        moving = tree.index.children_of(a)[1].id

        tree.move(moving, b, 0)
        tree.move(moving, a, 1)

        assert _orders(tree, a) == original_a
        assert _orders(tree, b) == original_b

    def test_random_moves_keep_groups_contiguous(self, tree: TaskTree) -> None:
        rng = random.Random(7)
        ids = [_add(tree, "r0")]
        for i in range(1, 12):
            parent = rng.choice(ids + [None])
            ids.append(_add(tree, f"t{i}", parent))
        for _ in range(60):
            task_id = rng.choice(ids)
            parent = rng.choice(ids + [None, None])
            try:
                tree.move(task_id, parent, rng.randint(-1, 6))
            except CyclicReparentError:
                continue
            assert _all_groups_contiguous(tree)
            for tid in ids:
                assert not tree.index.is_descendant(tid, tid)
                assert tree.require(tid) not in tree.index.ancestors(tid)
        assert len(tree.tasks()) == len(ids)


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

class TestDelete:
    def test_leaf_delete_renumbers_siblings(self, tree: TaskTree) -> None:
        ids = [_add(tree, t) for t in "ABC"]
        mutation = tree.delete(ids[0])
        assert mutation.deleted_ids == [ids[0]]
        assert _orders(tree, None) == [("B", 0), ("C", 1)]
        assert set(mutation.patches) == {ids[1], ids[2]}

    def test_reject_with_children(self, tree: TaskTree) -> None:
        p = _add(tree, "P")
        _add(tree, "kid", p)
        snap = tree.snapshot()
        with pytest.raises(HasChildrenError) as exc:
            tree.delete(p)
        assert exc.value.code == "validation_error"
        assert exc.value.details["child_count"] == 1
        assert tree.snapshot() == snap

    def test_cascade(self, tree: TaskTree) -> None:
        p = _add(tree, "P")
        kid = _add(tree, "kid", p)
        grandkid = _add(tree, "grandkid", kid)
        other = _add(tree, "Other")
        mutation = tree.delete(p, DeletePolicy.CASCADE)
        assert set(mutation.deleted_ids) == {p, kid, grandkid}
        assert [t.id for t in tree.tasks()] == [other]
        assert tree.require(other).sort_order == 0

    def test_promote(self, tree: TaskTree) -> None:
        p = _add(tree, "P")
        k0 = _add(tree, "k0", p)
        k1 = _add(tree, "k1", p)
        _add(tree, "Q")
        mutation = tree.delete(p, "promote")
        assert _orders(tree, None) == [("k0", 0), ("k1", 1), ("Q", 2)]
        assert tree.require(k0).parent_id is None
        assert mutation.patches[k1] == {"parent_id": None}
        assert mutation.deleted_ids == [p]

    def test_clears_blockers_on_removed_tasks(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        b = _add(tree, "B")
        tree.set_blocker(a, b)
        mutation = tree.delete(b)
        assert tree.require(a).blocking_task_id is None
        assert mutation.patches[a] == {"blocking_task_id": None}

    def test_unrelated_tasks_survive(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        b = _add(tree, "B")
        kid = _add(tree, "kid", b)
        tree.delete(a)
        assert {t.id for t in tree.tasks()} == {b, kid}

    def test_unknown_policy(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        with pytest.raises(ValidationError):
            tree.delete(a, "shred")

    def test_unknown_task(self, tree: TaskTree) -> None:
        with pytest.raises(UnknownTaskError):
            tree.delete("missing")


# ---------------------------------------------------------------------------
# Rollback / confirm / snapshots
# ---------------------------------------------------------------------------

class TestRollbackConfirm:
    def test_rollback_rename(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        snap = tree.snapshot()
        mutation = tree.rename(a, "B")
        tree.rollback(mutation)
        assert tree.snapshot() == snap

    def test_rollback_create(self, tree: TaskTree) -> None:
        mutation = tree.create("A")
        tree.rollback(mutation)
        assert tree.tasks() == []

    def test_rollback_move(self, tree: TaskTree) -> None:
        p = _add(tree, "P")
        ids = [_add(tree, t, p) for t in "abc"]
        _add(tree, "Q")
        before = {t.id: (t.parent_id, t.sort_order) for t in tree.tasks()}
        mutation = tree.move(ids[1], None, 0)
        tree.rollback(mutation)
        assert {t.id: (t.parent_id, t.sort_order) for t in tree.tasks()} == before

    def test_rollback_cascade_delete(self, tree: TaskTree) -> None:
        p = _add(tree, "P")
        _add(tree, "kid", p)
        blocked = _add(tree, "Blocked")
        tree.set_blocker(blocked, p)
        snap = sorted(tree.snapshot(), key=lambda t: t.id)
        mutation = tree.delete(p, DeletePolicy.CASCADE)
        tree.rollback(mutation)
        assert sorted(tree.snapshot(), key=lambda t: t.id) == snap

    def test_snapshot_restore(self, tree: TaskTree) -> None:
        _add(tree, "A")
        snap = tree.snapshot()
        _add(tree, "B")
        tree.restore(snap)
        assert [t.title for t in tree.tasks()] == ["A"]

    def test_confirm_rekeys_temp_ids(self, tree: TaskTree) -> None:
        mutation = tree.create("Parent")
        temp = mutation.task_id
        kid = _add(tree, "Kid", temp)
        other = _add(tree, "Other")
        tree.set_blocker(other, temp)

        canonical = mutation.task.evolve(id="P1", updated_at="2026-02-01T00:00:00+00:00")
        tree.confirm(mutation, {temp: canonical})

        assert tree.get(temp) is None
        assert tree.require("P1").title == "Parent"
        assert tree.require(kid).parent_id == "P1"
        assert tree.require(other).blocking_task_id == "P1"
        assert len(tree.tasks()) == 3

    def test_confirm_trusts_older_canonical_timestamp(self) -> None:
        tree = TaskTree("alice", clock=lambda: "2030-01-01T00:00:00+00:00")
        tree.load([Task(id="t1", owner="alice", title="Old", updated_at="2025-12-01T00:00:00+00:00")])
        mutation = tree.rename("t1", "Renamed")
        canonical = mutation.task.evolve(updated_at="2026-01-01T00:00:00+00:00")
        tree.confirm(mutation, {"t1": canonical})
        assert tree.require("t1").updated_at == "2026-01-01T00:00:00+00:00"

        remote = canonical.evolve(title="Remote", updated_at="2026-06-01T00:00:00+00:00")
        result = tree.reconcile(ChangeEvent(ChangeKind.UPDATE, remote))
        assert result.outcome == MergeOutcome.APPLIED
        assert tree.require("t1").title == "Remote"

    def test_confirm_accepts_dicts(self, tree: TaskTree) -> None:
        mutation = tree.create("A")
        record = mutation.task.evolve(id="A1", updated_at="2026-02-01T00:00:00+00:00").to_dict()
        tree.confirm(mutation, {mutation.task_id: record})
        assert [t.id for t in tree.tasks()] == ["A1"]


# ---------------------------------------------------------------------------
# Loading and reconciliation
# ---------------------------------------------------------------------------

class TestLoadAndReconcile:
    def _record(self, tid: str, updated: str, title: str = "Z", owner: str = "alice") -> dict:
        return Task(
            id=tid,
            owner=owner,
            title=title,
            created_at="2026-01-01T00:00:00+00:00",
            updated_at=updated,
        ).to_dict()

    def test_load_rejects_other_owner(self) -> None:
        with pytest.raises(OwnerMismatchError):
            TaskTree("alice", [Task(id="t1", owner="bob", title="x")])

    def test_load_fills_missing_owner(self) -> None:
        tree = TaskTree("alice", [{"id": "t1", "title": "x"}])
        assert tree.require("t1").owner == "alice"

    def test_owner_required(self) -> None:
        with pytest.raises(ValidationError):
            TaskTree("")

    def test_insert_is_idempotent(self, tree: TaskTree) -> None:
        event = {"kind": "insert", "record": self._record("z", "2026-01-02T00:00:00+00:00")}
        first = tree.reconcile(event)
        snap = tree.snapshot()
        second = tree.reconcile(event)
        assert first.outcome == MergeOutcome.APPLIED
        assert second.outcome == MergeOutcome.IGNORED
        assert tree.snapshot() == snap

    def test_stale_update_is_discarded(self) -> None:
        tree = TaskTree("alice", [self._record("z", "2026-01-05T00:00:00+00:00", title="Local")])
        snap = tree.snapshot()
        result = tree.reconcile({"kind": "update", "record": self._record("z", "2026-01-04T00:00:00+00:00", title="Old")})
        assert result.outcome == MergeOutcome.STALE
        assert result.outcome.value == "stale_reconciliation"
        assert tree.snapshot() == snap

    def test_newer_update_applies(self) -> None:
        tree = TaskTree("alice", [self._record("z", "2026-01-05T00:00:00+00:00", title="Local")])
        tree.reconcile({"kind": "update", "record": self._record("z", "2026-01-06T00:00:00Z", title="Remote")})
        assert tree.require("z").title == "Remote"

    def test_delete_rebuilds_index(self) -> None:
        tree = TaskTree("alice", [self._record("z", "2026-01-05T00:00:00+00:00")])
        tree.reconcile({"kind": "delete", "record": {"id": "z"}})
        assert "z" not in tree.index

    def test_remote_delete_can_leave_dangling_blocker(self, tree: TaskTree) -> None:
        a = _add(tree, "A")
        tree.reconcile({"kind": "insert", "record": self._record("b", "2026-01-02T00:00:00+00:00", title="B")})
        tree.set_blocker(a, "b")
        tree.reconcile({"kind": "delete", "record": {"id": "b"}})
        result = tree.can_complete(a)
        assert result.code == "dangling_blocker"
