"""Tree index derived from a flat task list.

:class:`TreeIndex` is rebuilt from scratch whenever the flat list changes.  It
holds no state of its own beyond what the list implies, so two indexes built
from equal lists are interchangeable.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from .errors import UnknownTaskError
from .model import Task, TaskStatus
from .ordering import order_tasks


class _RootKey:
    """Sentinel key for the root-level sibling group."""

    _instance: Optional["_RootKey"] = None

    def __new__(cls) -> "_RootKey":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ROOT"


ROOT = _RootKey()


def group_key(parent_id: Optional[str]) -> object:
    return ROOT if parent_id is None else parent_id


@dataclass(frozen=True)
class TreeIndex:
    by_id: dict[str, Task] = field(default_factory=dict)
    children: dict[object, list[Task]] = field(default_factory=dict)

    @classmethod
    def build(cls, tasks: Iterable[Task]) -> "TreeIndex":
        by_id: dict[str, Task] = {}
        grouped: dict[object, list[Task]] = {}
        for task in tasks:
            by_id[task.id] = task
            grouped.setdefault(group_key(task.parent_id), []).append(task)
        children = {key: order_tasks(group) for key, group in grouped.items()}
        return cls(by_id=by_id, children=children)

    # -- lookups ------------------------------------------------------------

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.by_id

    def __len__(self) -> int:
        return len(self.by_id)

    def get(self, task_id: Optional[str]) -> Optional[Task]:
        if task_id is None:
            return None
        return self.by_id.get(task_id)

    def require(self, task_id: Optional[str]) -> Task:
        task = self.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task

    def children_of(self, parent_id: Optional[str]) -> list[Task]:
        return list(self.children.get(group_key(parent_id), []))

    def siblings_of(self, task: Task) -> list[Task]:
        """The task's sibling group, including the task itself."""
        return self.children_of(task.parent_id)

    def roots(self) -> list[Task]:
        return self.children_of(None)

    def position_of(self, task: Task) -> int:
        for i, sibling in enumerate(self.siblings_of(task)):
            if sibling.id == task.id:
                return i
        return -1

    # -- ancestry -----------------------------------------------------------

    def descendants(self, task_id: str) -> list[Task]:
        """All tasks strictly below *task_id*, preorder in display order."""
        out: list[Task] = []
        stack = list(reversed(self.children.get(task_id, [])))
        seen: set[str] = set()
        while stack:
            node = stack.pop()
            if node.id in seen:
                continue
            seen.add(node.id)
            out.append(node)
            stack.extend(reversed(self.children.get(node.id, [])))
        return out

    def is_descendant(self, candidate_id: Optional[str], of_id: Optional[str]) -> bool:
        """True iff *candidate_id* lies anywhere in the subtree below *of_id*.

        Returns False when *of_id* does not exist and when the two ids are
        equal (a task is not its own descendant).
        """
        if candidate_id is None or of_id is None:
            return False
        queue: deque[str] = deque(child.id for child in self.children.get(of_id, []))
        seen: set[str] = set()
        while queue:
            node_id = queue.popleft()
            if node_id == candidate_id:
                return True
            if node_id in seen:
                continue
            seen.add(node_id)
            queue.extend(child.id for child in self.children.get(node_id, []))
        return False

    def ancestors(self, task_id: str) -> list[Task]:
        """Parent chain from the direct parent up to the root."""
        out: list[Task] = []
        seen: set[str] = {task_id}
        task = self.get(task_id)
        while task is not None and task.parent_id is not None:
            if task.parent_id in seen:
                break
            seen.add(task.parent_id)
            parent = self.get(task.parent_id)
            if parent is None:
                break
            out.append(parent)
            task = parent
        return out

    def depth(self, task_id: str) -> int:
        return len(self.ancestors(task_id))

    # -- traversal ----------------------------------------------------------

    def walk(self) -> Iterator[tuple[int, Task]]:
        """Preorder ``(depth, task)`` over the forest in display order."""
        stack: list[tuple[int, Task]] = [(0, task) for task in reversed(self.roots())]
        while stack:
            depth, task = stack.pop()
            yield depth, task
            stack.extend((depth + 1, child) for child in reversed(self.children.get(task.id, [])))

    def ordered(self) -> list[Task]:
        """Every task reachable from the roots, in display order."""
        return [task for _, task in self.walk()]

    def orphans(self) -> list[Task]:
        """Tasks whose ``parent_id`` names a record that is not in the index."""
        out: list[Task] = []
        for key, group in self.children.items():
            if key is ROOT or key in self.by_id:
                continue
            out.extend(group)
        return order_tasks(out)

    # -- stats --------------------------------------------------------------

    def count_total(self) -> int:
        return len(self.by_id)

    def count_by_status(self) -> dict[str, int]:
        counts = {status: 0 for status in TaskStatus.values()}
        for task in self.by_id.values():
            counts[TaskStatus(task.status).value] += 1
        return counts

    def has_blocked(self) -> bool:
        return self.count_by_status()[TaskStatus.BLOCKED.value] > 0
