"""Error taxonomy for the task tree engine.

Every rejection carries a stable ``code`` and a human-readable ``reason`` that
can be shown to a user as-is.  Guard and validation errors are raised before
any state changes; :class:`PersistenceFailure` is raised after an optimistic
change has been rolled back.
"""

from __future__ import annotations

from typing import Any, Optional


VALIDATION_ERROR = "validation_error"
CYCLIC_REPARENT = "cyclic_reparent"
CYCLIC_BLOCKER = "cyclic_blocker"
DANGLING_BLOCKER = "dangling_blocker"
GATE_REJECTED = "gate_rejected"
UNKNOWN_TASK = "unknown_task"
PERSISTENCE_FAILURE = "persistence_failure"
STALE_RECONCILIATION = "stale_reconciliation"


class TaskEngineError(Exception):
    """Base class for engine rejections."""

    code = "internal_error"

    def __init__(self, reason: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.reason}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ValidationError(TaskEngineError):
    code = VALIDATION_ERROR


class HasChildrenError(ValidationError):
    """Deleting a task with children needs an explicit policy."""


class OwnerMismatchError(ValidationError):
    pass


class PayloadError(ValidationError):
    """Wire payload rejected; ``field_code`` names the specific problem."""

    def __init__(self, field_code: str, reason: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(reason, details=details)
        self.field_code = field_code

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["code"] = self.field_code
        return payload


class CyclicReparentError(TaskEngineError):
    code = CYCLIC_REPARENT


class CyclicBlockerError(TaskEngineError):
    code = CYCLIC_BLOCKER


class DanglingBlockerError(TaskEngineError):
    code = DANGLING_BLOCKER


class GateRejectedError(TaskEngineError):
    code = GATE_REJECTED


class UnknownTaskError(TaskEngineError):
    code = UNKNOWN_TASK

    def __init__(self, task_id: Optional[str], reason: Optional[str] = None) -> None:
        super().__init__(reason or f"Task {task_id} does not exist.", details={"task_id": task_id})
        self.task_id = task_id


class PersistenceFailure(TaskEngineError):
    code = PERSISTENCE_FAILURE


class PersistenceError(Exception):
    """Raised by a persistence collaborator when a write cannot be applied."""
