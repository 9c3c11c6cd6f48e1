"""Task tree engine: validated mutations over one owner's task forest.

This is the primary entry-point for all task manipulation.  It wraps a flat
list of :class:`Task` records and the :class:`TreeIndex` derived from it with
business rules (title validation, reparent and blocker guards, the completion
gate, sibling renumbering, delete policies).

Every public mutation is atomic with respect to in-memory state: it either
raises before touching anything or applies fully and returns a
:class:`Mutation` carrying the pre-images needed to roll it back and the
minimal field sets that must be persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from loguru import logger

from ..utils import _normalize_iso, _now_iso
from .errors import HasChildrenError, OwnerMismatchError, ValidationError
from .gate import GateResult, can_complete
from .guards import check_blocker, check_reparent
from .index import TreeIndex
from .model import Task, TaskStatus, generate_temp_id
from .ordering import clamp_index, renumber
from .reconcile import ChangeEvent, MergeOutcome, MergeResult, merge


TaskLike = Union[Task, dict[str, Any]]
TreeSnapshot = tuple[Task, ...]


class DeletePolicy(str, Enum):
    """What happens to a deleted task's children."""

    REJECT = "reject"  # refuse while children exist
    CASCADE = "cascade"  # delete the whole subtree
    PROMOTE = "promote"  # children take the task's place


# ---------------------------------------------------------------------------
# Mutation record
# ---------------------------------------------------------------------------

@dataclass
class Mutation:
    """Outcome of one applied operation.

    ``before`` maps every affected id to its pre-image (``None`` when the task
    did not exist); ``after`` maps the same ids to the optimistic post-image
    (``None`` when the task was deleted).  ``patches`` holds, per surviving
    id, only the persisted fields that changed.
    """

    kind: str
    task_id: Optional[str] = None
    before: dict[str, Optional[Task]] = field(default_factory=dict)
    after: dict[str, Optional[Task]] = field(default_factory=dict)
    patches: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not self.after

    @property
    def changed(self) -> list[Task]:
        return [task for task in self.after.values() if task is not None]

    @property
    def deleted_ids(self) -> list[str]:
        return [task_id for task_id, task in self.after.items() if task is None]

    @property
    def created(self) -> Optional[Task]:
        for task_id, task in self.after.items():
            if task is not None and self.before.get(task_id) is None:
                return task
        return None

    @property
    def task(self) -> Optional[Task]:
        """Post-image of the primary task, if it survived the mutation."""
        if self.task_id is None:
            return None
        return self.after.get(self.task_id)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def _clean_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Task title is required.", details={"field": "title"})
    return title.strip()


def _coerce_status(status: Any) -> TaskStatus:
    try:
        return status if isinstance(status, TaskStatus) else TaskStatus(str(status))
    except ValueError:
        raise ValidationError(
            "status must be one of the supported task states.",
            details={"allowed_statuses": TaskStatus.values(), "status": status},
        ) from None


def _coerce_sort_order(value: Any, field_name: str = "sort_order") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            f"{field_name} must be a non-negative integer.",
            details={"field": field_name},
        )
    return value


class TaskTree:
    """Manage one owner's task forest in memory.

    Parameters
    ----------
    owner:
        Principal every task in this tree belongs to.
    tasks:
        Initial flat task list (records or dicts), in any order.
    clock:
        Callable returning the current ISO-8601 timestamp for optimistic
        ``created_at`` / ``updated_at`` values.
    gate_direct_done:
        When True, ``set_status(..., "done")`` goes through the completion
        gate like :meth:`complete` does.
    """

    def __init__(
        self,
        owner: str,
        tasks: Iterable[TaskLike] = (),
        *,
        clock: Callable[[], str] = _now_iso,
        gate_direct_done: bool = False,
    ) -> None:
        if not owner:
            raise ValidationError("owner is required.", details={"field": "owner"})
        self.owner = owner
        self.gate_direct_done = gate_direct_done
        self._clock = clock
        self._tasks: list[Task] = []
        self._index = TreeIndex()
        self.load(tasks)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _coerce(self, record: TaskLike) -> Task:
        task = record if isinstance(record, Task) else Task.from_dict(record)
        if task.owner and task.owner != self.owner:
            raise OwnerMismatchError(
                f"Task {task.id} belongs to another owner.",
                details={"task_id": task.id},
            )
        if not task.owner:
            task = task.evolve(owner=self.owner)
        return task

    def _set_tasks(self, tasks: list[Task]) -> None:
        self._tasks = tasks
        self._index = TreeIndex.build(tasks)

    def load(self, tasks: Iterable[TaskLike]) -> None:
        """Replace local state with *tasks* (e.g. the result of a fetch)."""
        self._set_tasks([self._coerce(record) for record in tasks])

    @property
    def index(self) -> TreeIndex:
        return self._index

    def tasks(self) -> list[Task]:
        """All tasks in display order; orphaned subtrees follow the reachable forest."""
        out = self._index.ordered()
        for orphan in self._index.orphans():
            out.append(orphan)
            out.extend(self._index.descendants(orphan.id))
        return out

    def get(self, task_id: str) -> Optional[Task]:
        return self._index.get(task_id)

    def require(self, task_id: str) -> Task:
        return self._index.require(task_id)

    def snapshot(self) -> TreeSnapshot:
        """Value-level snapshot of the whole tree."""
        return tuple(self._tasks)

    def restore(self, snapshot: TreeSnapshot) -> None:
        self._set_tasks(list(snapshot))

    def can_complete(self, task_id: str) -> GateResult:
        return can_complete(self._index, self.require(task_id))

    # ------------------------------------------------------------------
    # Commit / rollback / confirm
    # ------------------------------------------------------------------

    def _replace(self, changes: Mapping[str, Optional[Task]]) -> None:
        remaining = dict(changes)
        out: list[Task] = []
        for task in self._tasks:
            if task.id in remaining:
                replacement = remaining.pop(task.id)
                if replacement is not None:
                    out.append(replacement)
            else:
                out.append(task)
        out.extend(task for task in remaining.values() if task is not None)
        self._set_tasks(out)

    def _commit(
        self,
        kind: str,
        task_id: Optional[str],
        after: dict[str, Optional[Task]],
        patches: Optional[dict[str, dict[str, Any]]] = None,
    ) -> Mutation:
        before = {tid: self._index.get(tid) for tid in after}
        if patches is None:
            patches = {}
            for tid, new in after.items():
                old = before[tid]
                if new is None:
                    continue
                if old is None:
                    patches[tid] = {
                        "title": new.title,
                        "parent_id": new.parent_id,
                        "sort_order": new.sort_order,
                    }
                else:
                    diff = old.diff(new)
                    if diff:
                        patches[tid] = diff
        self._replace(after)
        mutation = Mutation(kind=kind, task_id=task_id, before=before, after=after, patches=patches)
        logger.debug(
            "Applied {} on {}: {} changed, {} deleted",
            kind,
            task_id,
            len(mutation.changed),
            len(mutation.deleted_ids),
        )
        return mutation

    def rollback(self, mutation: Mutation) -> None:
        """Restore the pre-images recorded by *mutation*."""
        if mutation.is_noop:
            return
        self._replace(mutation.before)
        logger.info("Rolled back {} on {}", mutation.kind, mutation.task_id)

    def confirm(self, mutation: Mutation, records: Mapping[str, TaskLike]) -> None:
        """Swap optimistic records for the canonical ones the store returned.

        *records* is keyed by local id.  When the canonical id differs (an
        optimistic create), the placeholder is dropped and references to it
        from other local tasks are re-keyed.  Canonical records always win over
        the local copy, whatever their ``updated_at``.
        """
        tasks = list(self._tasks)
        for local_id, raw in records.items():
            canonical = self._coerce(raw)
            if canonical.id != local_id:
                rekeyed: list[Task] = []
                for task in tasks:
                    if task.id == local_id:
                        continue
                    changes: dict[str, Any] = {}
                    if task.parent_id == local_id:
                        changes["parent_id"] = canonical.id
                    if task.blocking_task_id == local_id:
                        changes["blocking_task_id"] = canonical.id
                    rekeyed.append(task.evolve(**changes) if changes else task)
                tasks = rekeyed
            for pos, task in enumerate(tasks):
                if task.id == canonical.id:
                    tasks[pos] = canonical
                    break
            else:
                tasks.append(canonical)
        self._set_tasks(tasks)
        logger.debug("Confirmed {} on {} ({} records)", mutation.kind, mutation.task_id, len(records))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(
        self,
        title: str,
        parent_id: Optional[str] = None,
        sort_order: Optional[int] = None,
    ) -> Mutation:
        """Create a ``todo`` task, appended to its sibling group by default."""
        clean = _clean_title(title)
        if parent_id is not None:
            self._index.require(parent_id)
        if sort_order is None:
            sort_order = len(self._index.children_of(parent_id))
        else:
            sort_order = _coerce_sort_order(sort_order)

        now = self._clock()
        task = Task(
            id=generate_temp_id(),
            owner=self.owner,
            title=clean,
            parent_id=parent_id,
            sort_order=sort_order,
            status=TaskStatus.TODO,
            force_completed=False,
            created_at=now,
            updated_at=now,
        )
        mutation = self._commit("create", task.id, {task.id: task})
        logger.info("Created task {}: {}", task.id, clean)
        return mutation

    def rename(self, task_id: str, title: str) -> Mutation:
        clean = _clean_title(title)
        task = self.require(task_id)
        updated = task.touched(self._clock(), title=clean)
        return self._commit("rename", task.id, {task.id: updated}, {task.id: {"title": clean}})

    def set_status(self, task_id: str, status: Union[str, TaskStatus]) -> Mutation:
        """Set any status directly; always clears ``force_completed``.

        ``done`` is not gated here unless the tree was built with
        ``gate_direct_done=True``.
        """
        target = _coerce_status(status)
        task = self.require(task_id)
        if target == TaskStatus.DONE and self.gate_direct_done:
            can_complete(self._index, task).raise_for_rejection(task.id)
        updated = task.touched(self._clock(), status=target, force_completed=False)
        patch = {"status": target.value, "force_completed": False}
        return self._commit("status", task.id, {task.id: updated}, {task.id: patch})

    def complete(self, task_id: str, force: bool = False) -> Mutation:
        """Mark a task done, through the completion gate unless *force* is set."""
        task = self.require(task_id)
        if not force:
            result = can_complete(self._index, task)
            if not result.allowed:
                logger.info("Completion of {} rejected: {}", task.id, result.reason)
            result.raise_for_rejection(task.id)
        force = bool(force)
        updated = task.touched(self._clock(), status=TaskStatus.DONE, force_completed=force)
        patch = {"status": TaskStatus.DONE.value, "force_completed": force}
        mutation = self._commit("complete", task.id, {task.id: updated}, {task.id: patch})
        if force:
            logger.info("Force-completed task {}", task.id)
        return mutation

    def set_blocker(self, task_id: str, blocker_id: Optional[str]) -> Mutation:
        blocker_id = blocker_id or None
        check_blocker(self._index, task_id, blocker_id)
        task = self.require(task_id)
        updated = task.touched(self._clock(), blocking_task_id=blocker_id)
        return self._commit(
            "blocker",
            task.id,
            {task.id: updated},
            {task.id: {"blocking_task_id": blocker_id}},
        )

    def set_due(self, task_id: str, due_at: Union[str, datetime, None]) -> Mutation:
        task = self.require(task_id)
        normalized: Optional[str] = None
        if due_at is not None:
            normalized = _normalize_iso(due_at)
            if normalized is None:
                raise ValidationError(
                    "due_at must be null or a valid date-time string.",
                    details={"field": "due_at"},
                )
        updated = task.touched(self._clock(), due_at=normalized)
        return self._commit("due", task.id, {task.id: updated}, {task.id: {"due_at": normalized}})

    def move(self, task_id: str, new_parent_id: Optional[str], new_sort_order: int) -> Mutation:
        """Reparent and/or reorder *task_id*.

        The old and new sibling groups are both renumbered to ``0..n-1``; only
        tasks whose ``parent_id`` or ``sort_order`` actually change end up in
        the returned mutation.
        """
        new_parent_id = new_parent_id or None
        check_reparent(self._index, task_id, new_parent_id)
        task = self.require(task_id)
        if isinstance(new_sort_order, bool) or not isinstance(new_sort_order, int):
            raise ValidationError("sort_order must be an integer.", details={"field": "sort_order"})

        regrouped: list[Task] = []
        if task.parent_id != new_parent_id:
            source = [t for t in self._index.siblings_of(task) if t.id != task.id]
            regrouped.extend(renumber(source))

        destination = [t for t in self._index.children_of(new_parent_id) if t.id != task.id]
        position = clamp_index(new_sort_order, len(destination))
        destination.insert(position, task.evolve(parent_id=new_parent_id, sort_order=position))
        regrouped.extend(renumber(destination))

        now = self._clock()
        after: dict[str, Optional[Task]] = {}
        for candidate in regrouped:
            original = self._index.get(candidate.id)
            if original is None:
                continue
            if original.sort_order != candidate.sort_order or original.parent_id != candidate.parent_id:
                after[candidate.id] = candidate.evolve(updated_at=now)

        if not after:
            return Mutation(kind="move", task_id=task.id)

        mutation = self._commit("move", task.id, after)
        logger.info("Moved task {} under {} at {}", task.id, new_parent_id or "root", position)
        return mutation

    def delete(self, task_id: str, policy: Union[str, DeletePolicy] = DeletePolicy.REJECT) -> Mutation:
        """Remove a task.

        Children are handled per *policy*; former siblings are renumbered and
        blockers pointing at removed tasks are cleared.  Unrelated tasks are
        never removed.
        """
        try:
            policy = DeletePolicy(policy)
        except ValueError:
            raise ValidationError(
                f"Unknown delete policy: {policy}",
                details={"allowed_policies": [p.value for p in DeletePolicy]},
            ) from None
        task = self.require(task_id)
        kids = self._index.children_of(task.id)

        removed = {task.id}
        if kids and policy == DeletePolicy.REJECT:
            raise HasChildrenError(
                "Delete or move this task's subtasks first.",
                details={"task_id": task.id, "child_count": len(kids)},
            )
        if policy == DeletePolicy.CASCADE:
            removed.update(t.id for t in self._index.descendants(task.id))

        siblings = [t for t in self._index.siblings_of(task) if t.id != task.id]
        if policy == DeletePolicy.PROMOTE and kids:
            position = self._index.position_of(task)
            group = renumber(
                siblings[:position] + kids + siblings[position:],
                parent_id=task.parent_id,
                reparent=True,
            )
        else:
            group = renumber(siblings)

        now = self._clock()
        after: dict[str, Optional[Task]] = {tid: None for tid in removed}
        for candidate in group:
            original = self._index.get(candidate.id)
            if original is not None and candidate is not original:
                after[candidate.id] = candidate.evolve(updated_at=now)

        for other in self._tasks:
            if other.id in removed or other.blocking_task_id not in removed:
                continue
            base = after.get(other.id) or other
            after[other.id] = base.touched(now, blocking_task_id=None)

        mutation = self._commit("delete", task.id, after)
        logger.info("Deleted task {} ({} removed, policy={})", task.id, len(removed), policy.value)
        return mutation

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, event: Union[ChangeEvent, dict[str, Any]]) -> MergeResult:
        """Merge one change-feed event and rebuild the index."""
        result = merge(self._tasks, event, owner=self.owner)
        if result.changed:
            self._set_tasks(result.tasks)
        if result.outcome == MergeOutcome.STALE:
            logger.debug("Discarded stale change for {}", result.task_id)
        else:
            logger.debug("Reconciled {} for {}", result.outcome.value, result.task_id)
        return result
