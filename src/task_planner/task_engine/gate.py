"""Completion gate: may a task move to ``done`` without force?"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import DANGLING_BLOCKER, GATE_REJECTED, DanglingBlockerError, GateRejectedError
from .index import TreeIndex
from .model import Task, TaskStatus


SUBTASKS_INCOMPLETE = "Finish all nested subtasks before completing this task."
BLOCKER_MISSING = "The assigned blocking task no longer exists."


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    blocker_id: Optional[str] = None

    def raise_for_rejection(self, task_id: str) -> None:
        if self.allowed:
            return
        details = {"task_id": task_id}
        if self.blocker_id:
            details["blocking_task_id"] = self.blocker_id
        if self.code == DANGLING_BLOCKER:
            raise DanglingBlockerError(self.reason or BLOCKER_MISSING, details=details)
        raise GateRejectedError(self.reason or "This task is currently blocked.", details=details)


def descendants_done(index: TreeIndex, task_id: str) -> bool:
    return all(TaskStatus(child.status) == TaskStatus.DONE for child in index.descendants(task_id))


def can_complete(index: TreeIndex, task: Task) -> GateResult:
    """Evaluate the gate for *task* against *index*.

    Subtasks are checked first and reported in aggregate; the blocker is only
    consulted once the whole subtree is done.
    """
    if not descendants_done(index, task.id):
        return GateResult(False, SUBTASKS_INCOMPLETE, GATE_REJECTED)

    if task.blocking_task_id:
        blocker = index.get(task.blocking_task_id)
        if blocker is None:
            return GateResult(False, BLOCKER_MISSING, DANGLING_BLOCKER, task.blocking_task_id)
        if TaskStatus(blocker.status) != TaskStatus.DONE:
            return GateResult(
                False,
                f"This task is blocked by: {blocker.title}",
                GATE_REJECTED,
                blocker.id,
            )

    return GateResult(True)
