"""Sibling ordering: ``(sort_order, created_at)`` ascending."""

from __future__ import annotations

from typing import Iterable, Optional

from .model import Task


def order_key(task: Task) -> tuple[int, str]:
    # ISO-8601 UTC strings compare lexically in time order.
    return (task.sort_order, task.created_at)


def order_tasks(tasks: Iterable[Task]) -> list[Task]:
    return sorted(tasks, key=order_key)


def clamp_index(index: int, size: int) -> int:
    return max(0, min(index, size))


def renumber(
    siblings: Iterable[Task],
    *,
    parent_id: Optional[str] = None,
    reparent: bool = False,
) -> list[Task]:
    """Assign contiguous ``sort_order`` values ``0..n-1`` in the given sequence.

    Tasks already at the right position (and parent, when *reparent* is set)
    are returned as the same object so callers can detect no-ops by identity.
    """
    out: list[Task] = []
    for position, task in enumerate(siblings):
        changes: dict[str, object] = {}
        if task.sort_order != position:
            changes["sort_order"] = position
        if reparent and task.parent_id != parent_id:
            changes["parent_id"] = parent_id
        out.append(task.evolve(**changes) if changes else task)
    return out


def is_contiguous(siblings: Iterable[Task]) -> bool:
    """True when the group's ``sort_order`` values are exactly ``0..n-1``."""
    orders = sorted(task.sort_order for task in siblings)
    return orders == list(range(len(orders)))
