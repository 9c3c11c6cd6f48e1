"""Merge change-feed events into local task state.

:func:`merge` is a pure function of ``(local tasks, event)``.  Last writer wins
by ``updated_at``; ties go to the incoming record, which is presumed to come
from the authoritative store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Sequence, Union

from .model import Task
from ..utils import _parse_iso


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class MergeOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    STALE = "stale_reconciliation"


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    record: Task

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEvent":
        """Build an event from ``{"kind": ..., "record": {...}}``.

        Delete events may carry only ``{"id": ...}`` as their record.
        """
        kind = ChangeKind(str(data.get("kind") or data.get("type") or "").lower())
        raw = data.get("record") or data.get("new") or data.get("old") or {}
        record = raw if isinstance(raw, Task) else Task.from_dict(dict(raw))
        return cls(kind=kind, record=record)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "record": self.record.to_dict()}


@dataclass(frozen=True)
class MergeResult:
    tasks: list[Task]
    outcome: MergeOutcome
    task_id: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.outcome == MergeOutcome.APPLIED


def _clock(task: Task) -> datetime:
    return _parse_iso(task.updated_at) or _EPOCH


def merge(
    tasks: Sequence[Task],
    event: Union[ChangeEvent, dict[str, Any]],
    *,
    owner: Optional[str] = None,
) -> MergeResult:
    """Apply *event* to *tasks* and return the new list plus what happened."""
    if isinstance(event, dict):
        event = ChangeEvent.from_dict(event)
    incoming = event.record
    current = list(tasks)

    if owner is not None and incoming.owner and incoming.owner != owner:
        return MergeResult(current, MergeOutcome.IGNORED, incoming.id)

    position = next((i for i, task in enumerate(current) if task.id == incoming.id), None)

    if event.kind == ChangeKind.INSERT:
        if position is not None:
            return MergeResult(current, MergeOutcome.IGNORED, incoming.id)
        current.append(incoming)
        return MergeResult(current, MergeOutcome.APPLIED, incoming.id)

    if event.kind == ChangeKind.UPDATE:
        if position is None:
            current.append(incoming)
            return MergeResult(current, MergeOutcome.APPLIED, incoming.id)
        if _clock(incoming) >= _clock(current[position]):
            current[position] = incoming
            return MergeResult(current, MergeOutcome.APPLIED, incoming.id)
        return MergeResult(current, MergeOutcome.STALE, incoming.id)

    if position is None:
        return MergeResult(current, MergeOutcome.IGNORED, incoming.id)
    del current[position]
    return MergeResult(current, MergeOutcome.APPLIED, incoming.id)
