"""Optimistic client session over a :class:`TaskBackend`.

Each operation applies to the local :class:`TaskTree` first, then persists
the mutation's patches.  Success swaps in the canonical records the backend
returned; failure rolls the local tree back to its pre-images and raises
:class:`PersistenceFailure`.  Change-feed events are merged as they arrive.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

from ..utils import _now_iso
from .backend import ChangeFeed, TaskBackend
from .engine import DeletePolicy, Mutation, TaskTree
from .errors import PersistenceFailure, ValidationError
from .model import Task, TaskStatus, is_temp_id
from .reconcile import ChangeEvent, MergeResult

SYNCING_REASON = "Task is still syncing; try again in a moment."


def _references_pending(fields: dict[str, Any]) -> bool:
    return any(is_temp_id(fields.get(ref)) for ref in ("parent_id", "blocking_task_id"))


class PlannerSession:
    """Tie one owner's :class:`TaskTree` to a persistence backend.

    Parameters
    ----------
    backend:
        Anything implementing :class:`TaskBackend`.
    owner:
        The authenticated principal.
    gate_direct_done:
        Forwarded to :class:`TaskTree`.
    clock:
        Source of the ``now`` timestamp sent with every write.
    """

    def __init__(
        self,
        backend: TaskBackend,
        owner: str,
        *,
        gate_direct_done: bool = False,
        clock: Callable[[], str] = _now_iso,
    ) -> None:
        self.backend = backend
        self.owner = owner
        self._clock = clock
        self.tree = TaskTree(owner, clock=clock, gate_direct_done=gate_direct_done)

    # ------------------------------------------------------------------
    # Loading and change feed
    # ------------------------------------------------------------------

    async def load(self) -> list[Task]:
        """Replace local state with the backend's records for this owner."""
        try:
            records = await self.backend.fetch(self.owner)
        except Exception as exc:
            logger.warning("Unable to load tasks for {}: {}", self.owner, exc)
            raise PersistenceFailure(f"Unable to load tasks: {exc}") from exc
        self.tree.load(records)
        logger.info("Loaded {} tasks for {}", len(records), self.owner)
        return self.tree.tasks()

    def tasks(self) -> list[Task]:
        return self.tree.tasks()

    def subscribe(self) -> ChangeFeed:
        return self.backend.subscribe(self.owner)

    def apply_event(self, event: Union[ChangeEvent, dict[str, Any]]) -> MergeResult:
        return self.tree.reconcile(event)

    async def follow(self, feed: ChangeFeed, *, limit: Optional[int] = None) -> int:
        """Merge events from *feed* until it closes or *limit* events were seen."""
        seen = 0
        async for event in feed:
            self.apply_event(event)
            seen += 1
            if limit is not None and seen >= limit:
                break
        return seen

    # ------------------------------------------------------------------
    # Persistence plumbing
    # ------------------------------------------------------------------

    async def _guarded(self, mutation: Mutation, write: Callable[[], Awaitable[dict[str, Task]]]) -> Mutation:
        if mutation.is_noop:
            return mutation
        try:
            records = await write()
        except Exception as exc:
            self.tree.rollback(mutation)
            logger.warning("Persisting {} on {} failed: {}", mutation.kind, mutation.task_id, exc)
            raise PersistenceFailure(
                f"Unable to save changes: {exc}",
                details={"operation": mutation.kind, "task_id": mutation.task_id},
            ) from exc
        self.tree.confirm(mutation, records)
        return mutation

    def _reject_pending(self, mutation: Mutation) -> None:
        """Refuse writes that would reference ids the backend has not assigned yet."""
        pending = [tid for tid in mutation.deleted_ids if is_temp_id(tid)]
        for tid, fields in mutation.patches.items():
            if is_temp_id(tid) or _references_pending(fields):
                pending.append(tid)
        if pending:
            self.tree.rollback(mutation)
            raise ValidationError(SYNCING_REASON, details={"task_ids": pending})

    async def _write_all(self, mutation: Mutation) -> dict[str, Task]:
        """Persist every patch and removal of *mutation* as one backend write."""
        now = self._clock()
        deleted = mutation.deleted_ids
        if len(mutation.patches) == 1 and not deleted:
            [(task_id, fields)] = mutation.patches.items()
            return {task_id: await self.backend.patch(self.owner, task_id, fields, now)}
        return await self.backend.patch_many(self.owner, mutation.patches, now, deleted)

    async def _persist_patches(self, mutation: Mutation) -> Mutation:
        self._reject_pending(mutation)
        return await self._guarded(mutation, lambda: self._write_all(mutation))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, title: str, parent_id: Optional[str] = None, sort_order: Optional[int] = None) -> Task:
        if is_temp_id(parent_id):
            raise ValidationError(SYNCING_REASON, details={"task_ids": [parent_id]})
        mutation = self.tree.create(title, parent_id=parent_id, sort_order=sort_order)
        temp_id = mutation.task_id
        created: list[Task] = []

        async def _write() -> dict[str, Task]:
            canonical = await self.backend.create(self.owner, mutation.patches[temp_id], self._clock())
            created.append(canonical)
            return {temp_id: canonical}

        await self._guarded(mutation, _write)
        return self.tree.require(created[0].id)

    async def rename(self, task_id: str, title: str) -> Mutation:
        return await self._persist_patches(self.tree.rename(task_id, title))

    async def set_status(self, task_id: str, status: Union[str, TaskStatus]) -> Mutation:
        return await self._persist_patches(self.tree.set_status(task_id, status))

    async def complete(self, task_id: str, force: bool = False) -> Mutation:
        return await self._persist_patches(self.tree.complete(task_id, force=force))

    async def set_blocker(self, task_id: str, blocker_id: Optional[str]) -> Mutation:
        return await self._persist_patches(self.tree.set_blocker(task_id, blocker_id))

    async def set_due(self, task_id: str, due_at: Union[str, datetime, None]) -> Mutation:
        return await self._persist_patches(self.tree.set_due(task_id, due_at))

    async def move(self, task_id: str, new_parent_id: Optional[str], new_sort_order: int) -> Mutation:
        return await self._persist_patches(self.tree.move(task_id, new_parent_id, new_sort_order))

    async def delete(self, task_id: str, policy: Union[str, DeletePolicy] = DeletePolicy.REJECT) -> Mutation:
        return await self._persist_patches(self.tree.delete(task_id, policy))
