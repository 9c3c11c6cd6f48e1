"""Reparent and blocker guards.

Both checks walk only the subtree of the task being changed.  Because every
mutation passes through them, the parent relation stays a forest without a
global cycle scan.
"""

from __future__ import annotations

from typing import Optional

from .errors import CyclicBlockerError, CyclicReparentError
from .index import TreeIndex


def check_reparent(index: TreeIndex, task_id: str, new_parent_id: Optional[str]) -> None:
    """Reject moving *task_id* under itself or one of its descendants."""
    task = index.require(task_id)
    if new_parent_id is None:
        return
    if new_parent_id == task.id or index.is_descendant(new_parent_id, task.id):
        raise CyclicReparentError(
            "Cannot move a task into one of its nested children.",
            details={"task_id": task.id, "parent_id": new_parent_id},
        )
    index.require(new_parent_id)


def check_blocker(index: TreeIndex, task_id: str, blocker_id: Optional[str]) -> None:
    """Reject blocking *task_id* on itself or on one of its own subtasks."""
    task = index.require(task_id)
    if blocker_id is None:
        return
    if blocker_id == task.id or index.is_descendant(blocker_id, task.id):
        raise CyclicBlockerError(
            "A task cannot be blocked by itself or one of its own subtasks.",
            details={"task_id": task.id, "blocking_task_id": blocker_id},
        )
    index.require(blocker_id)
