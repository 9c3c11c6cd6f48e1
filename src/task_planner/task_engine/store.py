"""File-based task store with cross-process locking and a change feed.

Stores every owner's tasks in a single YAML file (``tasks.yaml``) inside the
``.task_planner/`` state directory.  All reads and writes go through
:meth:`TaskStore.transaction`, which holds an exclusive file lock.  This is the
authoritative side the engine persists to: it stamps ``updated_at`` with the
caller-supplied server time, returns canonical records and tells subscribers
about each committed change.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from loguru import logger

from ..constants import TASKS_FILE, TASKS_LOCK_FILE
from ..io_utils import StateLock, _atomic_write_yaml, _load_yaml_with_error
from ..utils import _now_iso
from .errors import PersistenceError
from .model import PERSISTED_FIELDS, Task, TaskStatus, _generate_id
from .reconcile import ChangeEvent, ChangeKind

ChangeListener = Callable[[ChangeEvent], None]

STORE_VERSION = 1


# ---------------------------------------------------------------------------
# Low-level I/O
# ---------------------------------------------------------------------------

def _load_raw(path: Path) -> list[dict[str, Any]]:
    """Load the raw task list from *path*, returning ``[]`` if missing."""
    data, err = _load_yaml_with_error(path, {})
    if err:
        raise PersistenceError(f"Unable to read task store: {err}")
    tasks = data.get("tasks", [])
    return [row for row in tasks if isinstance(row, dict)] if isinstance(tasks, list) else []


def _save_raw(path: Path, tasks: list[dict[str, Any]]) -> None:
    _atomic_write_yaml(path, {"version": STORE_VERSION, "tasks": tasks})


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = sorted(set(fields) - set(PERSISTED_FIELDS))
    if unknown:
        raise PersistenceError(f"Unsupported fields: {unknown}")


# ---------------------------------------------------------------------------
# TaskStore
# ---------------------------------------------------------------------------

class TaskStore:
    """Owner-scoped, file-backed store for :class:`Task` records.

    Parameters
    ----------
    state_dir:
        Path to the ``.task_planner/`` directory.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._store_path = state_dir / TASKS_FILE
        self._lock = StateLock(state_dir / TASKS_LOCK_FILE)
        self._listeners: list[ChangeListener] = []

    @property
    def path(self) -> Path:
        return self._store_path

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> list[Task]:
        tasks: list[Task] = []
        for row in _load_raw(self._store_path):
            try:
                tasks.append(Task.from_dict(row))
            except (TypeError, ValueError) as exc:
                raise PersistenceError(
                    f"Unable to read task store: {self._store_path.name}: bad record {row.get('id')!r}: {exc}"
                ) from exc
        return tasks

    def _save(self, tasks: list[Task]) -> None:
        _save_raw(self._store_path, [t.to_dict() for t in tasks])

    def _publish(self, events: list[ChangeEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                listener(event)

    # -- change feed --------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register *listener* for committed changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[_TaskTx]:
        """Acquire the lock, load tasks, yield a transaction, and save on exit.

        Usage::

            with store.transaction() as tx:
                task = tx.get(owner, task_id)
                # automatically saved on exit
        """
        with self._lock:
            tx = _TaskTx(self._load())
            yield tx
            if tx.dirty:
                self._save(tx.tasks)
        self._publish(tx.events)

    def fetch(self, owner: str) -> list[Task]:
        """Every task of *owner*, in no particular order."""
        with self._lock:
            return [t for t in self._load() if t.owner == owner]

    def create(self, owner: str, fields: dict[str, Any], now: Optional[str] = None) -> Task:
        now = now or _now_iso()
        title = str(fields.get("title") or "").strip()
        if not title:
            raise PersistenceError("Task title is required.")
        with self.transaction() as tx:
            parent_id = fields.get("parent_id")
            if parent_id is not None and tx.get(owner, parent_id) is None:
                raise PersistenceError(f"Parent task {parent_id} does not exist.")
            task = Task(
                id=_generate_id(),
                owner=owner,
                title=title,
                parent_id=parent_id,
                sort_order=int(fields.get("sort_order") or 0),
                status=TaskStatus.TODO,
                created_at=now,
                updated_at=now,
            )
            tx.add(task)
        logger.info("Stored task {} for {}", task.id, owner)
        return task

    def patch(self, owner: str, task_id: str, fields: dict[str, Any], now: Optional[str] = None) -> Task:
        _check_fields(fields)
        with self.transaction() as tx:
            task = tx.update(owner, task_id, fields, now or _now_iso())
        return task

    def patch_many(
        self,
        owner: str,
        patches: dict[str, dict[str, Any]],
        now: Optional[str] = None,
        delete_ids: Iterable[str] = (),
    ) -> dict[str, Task]:
        """Apply several patches, then *delete_ids*, in one transaction.

        Nothing is saved or published unless every step succeeds.
        """
        for fields in patches.values():
            _check_fields(fields)
        now = now or _now_iso()
        delete_ids = list(delete_ids)
        with self.transaction() as tx:
            records = {tid: tx.update(owner, tid, fields, now) for tid, fields in patches.items()}
            for task_id in delete_ids:
                tx.hard_remove(owner, task_id)
        logger.info("Stored {} patches and {} removals for {}", len(records), len(delete_ids), owner)
        return records

    def delete(self, owner: str, task_id: str) -> None:
        with self.transaction() as tx:
            tx.hard_remove(owner, task_id)
        logger.info("Removed task {} for {}", task_id, owner)


class _TaskTx:
    """In-memory transaction over the full task list.

    Mutations are flushed to disk, and their change events published, when the
    ``transaction`` context-manager exits.
    """

    def __init__(self, tasks: list[Task]) -> None:
        self.tasks = tasks
        self.dirty = False
        self.events: list[ChangeEvent] = []
        self._index: dict[str, int] = {t.id: i for i, t in enumerate(tasks)}

    # -- lookups ------------------------------------------------------------

    def get(self, owner: str, task_id: str) -> Optional[Task]:
        idx = self._index.get(task_id)
        if idx is None:
            return None
        task = self.tasks[idx]
        return task if task.owner == owner else None

    def list_for(self, owner: str) -> list[Task]:
        return [t for t in self.tasks if t.owner == owner]

    # -- mutations ----------------------------------------------------------

    def add(self, task: Task) -> Task:
        if task.id in self._index:
            raise PersistenceError(f"Task {task.id} already exists")
        self._index[task.id] = len(self.tasks)
        self.tasks.append(task)
        self.dirty = True
        self.events.append(ChangeEvent(ChangeKind.INSERT, task))
        return task

    def update(self, owner: str, task_id: str, changes: dict[str, Any], now: str) -> Task:
        task = self.get(owner, task_id)
        if task is None:
            raise PersistenceError(f"Task {task_id} not found")
        values = dict(changes)
        if "status" in values:
            try:
                values["status"] = TaskStatus(values["status"])
            except ValueError:
                raise PersistenceError(f"Invalid status: {values['status']}") from None
        for ref in ("parent_id", "blocking_task_id"):
            target = values.get(ref)
            if target is not None and self.get(owner, target) is None:
                raise PersistenceError(f"{ref} {target} does not exist")
        updated = task.touched(now, **values)
        self.tasks[self._index[task_id]] = updated
        self.dirty = True
        self.events.append(ChangeEvent(ChangeKind.UPDATE, updated))
        return updated

    def hard_remove(self, owner: str, task_id: str) -> Task:
        """Physically remove a task from the store."""
        task = self.get(owner, task_id)
        if task is None:
            raise PersistenceError(f"Task {task_id} not found")
        self.tasks.pop(self._index[task_id])
        self._index = {t.id: i for i, t in enumerate(self.tasks)}
        self.dirty = True
        self.events.append(ChangeEvent(ChangeKind.DELETE, task))
        return task
