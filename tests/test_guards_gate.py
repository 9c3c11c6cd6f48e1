"""Tests for the reparent/blocker guards and the completion gate."""

from __future__ import annotations

import pytest

from task_planner.task_engine.errors import (
    CyclicBlockerError,
    CyclicReparentError,
    DanglingBlockerError,
    GateRejectedError,
    UnknownTaskError,
)
from task_planner.task_engine.gate import BLOCKER_MISSING, SUBTASKS_INCOMPLETE, can_complete, descendants_done
from task_planner.task_engine.guards import check_blocker, check_reparent
from task_planner.task_engine.index import TreeIndex
from task_planner.task_engine.model import Task, TaskStatus


def _task(tid: str, parent: str | None = None, order: int = 0, **kw) -> Task:
    return Task(id=tid, owner="alice", title=f"Task {tid}", parent_id=parent, sort_order=order, **kw)


@pytest.fixture
def index() -> TreeIndex:
    return TreeIndex.build([
        _task("x"),
        _task("y", "x"),
        _task("z", "y"),
        _task("other", order=1),
    ])


class TestReparentGuard:
    @pytest.mark.parametrize("target", ["x", "y", "z"])
    def test_rejects_self_and_descendants(self, index: TreeIndex, target: str) -> None:
        with pytest.raises(CyclicReparentError) as exc:
            check_reparent(index, "x", target)
        assert exc.value.code == "cyclic_reparent"

    def test_allows_unrelated_parent_and_root(self, index: TreeIndex) -> None:
        check_reparent(index, "y", "other")
        check_reparent(index, "y", None)
        check_reparent(index, "z", "x")

    def test_unknown_parent(self, index: TreeIndex) -> None:
        with pytest.raises(UnknownTaskError):
            check_reparent(index, "y", "missing")

    def test_unknown_task(self, index: TreeIndex) -> None:
        with pytest.raises(UnknownTaskError):
            check_reparent(index, "missing", None)


class TestBlockerGuard:
    @pytest.mark.parametrize("blocker", ["x", "y", "z"])
    def test_rejects_self_and_subtasks(self, index: TreeIndex, blocker: str) -> None:
        with pytest.raises(CyclicBlockerError) as exc:
            check_blocker(index, "x", blocker)
        assert "own subtasks" in exc.value.reason

    def test_ancestor_may_block(self, index: TreeIndex) -> None:
        check_blocker(index, "z", "x")

    def test_clear_is_always_allowed(self, index: TreeIndex) -> None:
        check_blocker(index, "x", None)

    def test_unknown_blocker(self, index: TreeIndex) -> None:
        with pytest.raises(UnknownTaskError):
            check_blocker(index, "x", "missing")


class TestCompletionGate:
    def test_incomplete_descendant_rejects(self, index: TreeIndex) -> None:
        result = can_complete(index, index.require("x"))
        assert not result.allowed
        assert result.reason == SUBTASKS_INCOMPLETE
        assert result.code == "gate_rejected"

    def test_transitive_descendants_checked(self) -> None:
        index = TreeIndex.build([
            _task("x"),
            _task("y", "x", status=TaskStatus.DONE),
            _task("z", "y"),
        ])
        assert not descendants_done(index, "x")
        assert not can_complete(index, index.require("x")).allowed

    def test_leaf_allowed(self, index: TreeIndex) -> None:
        assert can_complete(index, index.require("z")).allowed

    def test_blocker_not_done_names_title(self, index: TreeIndex) -> None:
        index = TreeIndex.build([_task("a", blocking_task_id="b"), _task("b", order=1)])
        result = can_complete(index, index.require("a"))
        assert not result.allowed
        assert result.reason == "This task is blocked by: Task b"
        assert result.blocker_id == "b"
        with pytest.raises(GateRejectedError) as exc:
            result.raise_for_rejection("a")
        assert exc.value.details == {"task_id": "a", "blocking_task_id": "b"}

    def test_blocker_done_allows(self) -> None:
        index = TreeIndex.build([
            _task("a", blocking_task_id="b"),
            _task("b", order=1, status=TaskStatus.DONE),
        ])
        assert can_complete(index, index.require("a")).allowed

    def test_dangling_blocker(self) -> None:
        index = TreeIndex.build([_task("a", blocking_task_id="gone")])
        result = can_complete(index, index.require("a"))
        assert not result.allowed
        assert result.reason == BLOCKER_MISSING
        assert result.code == "dangling_blocker"
        with pytest.raises(DanglingBlockerError):
            result.raise_for_rejection("a")

    def test_subtasks_checked_before_blocker(self) -> None:
        index = TreeIndex.build([
            _task("a", blocking_task_id="gone"),
            _task("kid", "a"),
        ])
        assert can_complete(index, index.require("a")).reason == SUBTASKS_INCOMPLETE

    def test_allowed_result_does_not_raise(self, index: TreeIndex) -> None:
        can_complete(index, index.require("z")).raise_for_rejection("z")
