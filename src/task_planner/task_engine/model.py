"""Task model for the task tree engine.

This module defines the single entity the engine manages: a task owned by one
principal, nested under an optional parent, ordered among its siblings and
optionally blocked by another task.  Records are plain dataclasses so they can
be copied cheaply for optimistic snapshots and serialized to YAML / JSON.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from ..constants import TEMP_ID_PREFIX
from ..utils import _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Workflow status of a task.  ``done`` is the only terminal value."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DELAYED = "delayed"
    DONE = "done"

    @classmethod
    def values(cls) -> list[str]:
        return [e.value for e in cls]


# Fields the persistence collaborator accepts on create/patch.
PERSISTED_FIELDS = (
    "title",
    "parent_id",
    "sort_order",
    "status",
    "force_completed",
    "blocking_task_id",
    "due_at",
)

# Full record shape as stored and streamed.
TASK_FIELDS = (
    "id",
    "owner",
    "parent_id",
    "blocking_task_id",
    "title",
    "status",
    "force_completed",
    "due_at",
    "sort_order",
    "created_at",
    "updated_at",
)


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------

def _generate_id() -> str:
    """Canonical task ID as assigned by the store: a UUID4 string."""
    return str(uuid.uuid4())


def generate_temp_id() -> str:
    """Placeholder ID for an optimistic record pending confirmation."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4()}"


def is_temp_id(task_id: Optional[str]) -> bool:
    return bool(task_id) and str(task_id).startswith(TEMP_ID_PREFIX)


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A node in one owner's task forest.

    The engine never edits a Task in place once it is part of a tree: every
    mutation produces a new record via :meth:`evolve`, which is what keeps
    pre-mutation snapshots valid.
    """

    # Identity
    id: str = field(default_factory=_generate_id)
    owner: str = ""
    title: str = ""

    # Hierarchy
    parent_id: Optional[str] = None
    sort_order: int = 0

    # Workflow
    status: TaskStatus = TaskStatus.TODO
    force_completed: bool = False
    blocking_task_id: Optional[str] = None
    due_at: Optional[str] = None

    # Timestamps (ISO-8601, UTC)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    # ------------------------------------------------------------------
    # JSON Schema
    # ------------------------------------------------------------------

    @classmethod
    def json_schema(cls) -> dict[str, Any]:
        """Return a JSON Schema (draft-07) describing a task record."""
        return {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "title": "Task",
            "type": "object",
            "required": ["id", "owner", "title", "status", "sort_order"],
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "owner": {"type": "string", "minLength": 1},
                "title": {"type": "string", "minLength": 1},
                "parent_id": {"type": ["string", "null"]},
                "sort_order": {"type": "integer", "minimum": 0},
                "status": {"type": "string", "enum": TaskStatus.values()},
                "force_completed": {"type": "boolean"},
                "blocking_task_id": {"type": ["string", "null"]},
                "due_at": {"type": ["string", "null"], "format": "date-time"},
                "created_at": {"type": "string", "format": "date-time"},
                "updated_at": {"type": "string", "format": "date-time"},
            },
            "additionalProperties": False,
        }

    @classmethod
    def validate_dict(cls, data: dict[str, Any]) -> list[str]:
        """Lightweight validation of a task record against the schema.

        Returns a list of error strings (empty = valid).
        """
        errors: list[str] = []
        if not isinstance(data, dict):
            return ["Expected a dict"]
        if not data.get("id"):
            errors.append("'id' is required and must be non-empty")
        if not data.get("owner"):
            errors.append("'owner' is required and must be non-empty")
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            errors.append("'title' is required and must be non-empty")
        status = data.get("status")
        if status is not None:
            value = status.value if isinstance(status, TaskStatus) else status
            if value not in TaskStatus.values():
                errors.append(f"'status' must be one of {TaskStatus.values()}, got '{status}'")
        sort_order = data.get("sort_order")
        if sort_order is not None:
            if isinstance(sort_order, bool) or not isinstance(sort_order, int) or sort_order < 0:
                errors.append("'sort_order' must be a non-negative integer")
        force = data.get("force_completed")
        if force is not None and not isinstance(force, bool):
            errors.append("'force_completed' must be a boolean")
        if data.get("id") and data.get("id") == data.get("parent_id"):
            errors.append("'parent_id' must not reference the task itself")
        if data.get("id") and data.get("id") == data.get("blocking_task_id"):
            errors.append("'blocking_task_id' must not reference the task itself")
        unknown = sorted(set(data) - set(TASK_FIELDS))
        if unknown:
            errors.append(f"unknown fields: {unknown}")
        return errors

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        data: dict[str, Any] = {}
        for k, v in asdict(self).items():
            if isinstance(v, Enum):
                data[k] = v.value
            else:
                data[k] = v
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing the status enum gracefully."""
        d = dict(data)

        raw_status = d.pop("status", None)
        status = TaskStatus.TODO
        if isinstance(raw_status, TaskStatus):
            status = raw_status
        elif raw_status is not None:
            try:
                status = TaskStatus(str(raw_status))
            except ValueError:
                status = TaskStatus.TODO

        now = _now_iso()
        created_at = str(d.pop("created_at", None) or now)
        return cls(
            id=str(d.pop("id", None) or _generate_id()),
            owner=str(d.pop("owner", None) or d.pop("user_id", None) or ""),
            title=str(d.pop("title", "") or ""),
            parent_id=d.pop("parent_id", None) or None,
            sort_order=int(d.pop("sort_order", 0) or 0),
            status=status,
            force_completed=bool(d.pop("force_completed", False)),
            blocking_task_id=d.pop("blocking_task_id", None) or None,
            due_at=d.pop("due_at", None) or None,
            created_at=created_at,
            updated_at=str(d.pop("updated_at", None) or created_at),
        )

    def persisted_fields(self) -> dict[str, Any]:
        """Return the subset of fields the persistence collaborator accepts."""
        data = self.to_dict()
        return {key: data[key] for key in PERSISTED_FIELDS}

    # ------------------------------------------------------------------
    # Copy-on-write helpers
    # ------------------------------------------------------------------

    def evolve(self, **changes: Any) -> "Task":
        """Return a copy with *changes* applied (``self`` is left untouched)."""
        return replace(self, **changes)

    def touched(self, now: str, **changes: Any) -> "Task":
        """Return a copy with *changes* applied and ``updated_at`` bumped to *now*."""
        return replace(self, updated_at=now, **changes)

    def diff(self, other: "Task") -> dict[str, Any]:
        """Persisted fields whose value in *other* differs from ``self``."""
        mine = self.persisted_fields()
        theirs = other.persisted_fields()
        return {key: theirs[key] for key in PERSISTED_FIELDS if mine[key] != theirs[key]}

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def is_pending_confirmation(self) -> bool:
        return is_temp_id(self.id)
