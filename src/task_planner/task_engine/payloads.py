"""Wire payload models for task create / patch requests.

These mirror what a transport layer hands the engine: untrusted JSON objects.
Validation failures raise :class:`PayloadError` whose ``field_code`` is a
stable identifier such as ``invalid_title`` or ``unknown_fields``.
"""

from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..utils import _normalize_iso
from .errors import PayloadError
from .model import PERSISTED_FIELDS, TaskStatus


class CreateTaskPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    parent_id: Optional[str] = None
    sort_order: StrictInt = Field(default=0, ge=0)

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Task title is required.")
        return value


class PatchTaskPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    status: Optional[TaskStatus] = None
    due_at: Optional[str] = None
    parent_id: Optional[str] = None
    sort_order: Optional[Annotated[StrictInt, Field(ge=0)]] = None
    blocking_task_id: Optional[str] = None
    force_completed: Optional[StrictBool] = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            raise ValueError("title must be a non-empty string.")
        value = value.strip()
        if not value:
            raise ValueError("title must be a non-empty string.")
        return value

    @field_validator("due_at")
    @classmethod
    def _due_at_iso(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = _normalize_iso(value)
        if normalized is None:
            raise ValueError("due_at must be null or a valid date-time string.")
        return normalized

    def fields(self) -> dict[str, Any]:
        """Only the fields the caller actually sent, JSON-ready."""
        return self.model_dump(mode="json", exclude_unset=True)


_FIELD_CODES = {
    "title": ("invalid_title", "title must be a non-empty string."),
    "status": ("invalid_status", "status must be one of the supported task states."),
    "due_at": ("invalid_due_at", "due_at must be null or a valid date-time string."),
    "parent_id": ("invalid_parent_id", "parent_id must be null or a string id."),
    "sort_order": ("invalid_sort_order", "sort_order must be a non-negative integer."),
    "blocking_task_id": ("invalid_blocking_task_id", "blocking_task_id must be null or a string id."),
    "force_completed": ("invalid_force_completed", "force_completed must be a boolean."),
}

_NON_NULLABLE = ("title", "status", "sort_order", "force_completed")


def _first_error(exc: PydanticValidationError) -> PayloadError:
    error = exc.errors()[0]
    loc = error.get("loc") or ("",)
    name = str(loc[0])
    code, message = _FIELD_CODES.get(name, ("invalid_payload", "Invalid request payload."))
    details: dict[str, Any] = {}
    if name == "status":
        details["allowed_statuses"] = TaskStatus.values()
    return PayloadError(code, message, details=details)


def validate_create_payload(payload: Any) -> CreateTaskPayload:
    if not isinstance(payload, dict):
        raise PayloadError("invalid_payload", "Payload must be a JSON object.")
    if not isinstance(payload.get("title"), str) or not payload["title"].strip():
        raise PayloadError("invalid_title", "Task title is required.")
    try:
        return CreateTaskPayload.model_validate(payload)
    except PydanticValidationError as exc:
        raise _first_error(exc) from None


def validate_patch_payload(payload: Any) -> PatchTaskPayload:
    if not isinstance(payload, dict):
        raise PayloadError("invalid_payload", "Payload must be a JSON object.")
    unknown = [key for key in payload if key not in PERSISTED_FIELDS]
    if unknown:
        raise PayloadError(
            "unknown_fields",
            "Payload includes unsupported fields.",
            details={"unknown_fields": unknown},
        )
    if not payload:
        raise PayloadError("empty_patch", "At least one updatable field is required.")
    for name in _NON_NULLABLE:
        if name in payload and payload[name] is None:
            code, message = _FIELD_CODES[name]
            raise PayloadError(code, message)
    try:
        return PatchTaskPayload.model_validate(payload)
    except PydanticValidationError as exc:
        raise _first_error(exc) from None
