"""Configure loguru output and summarize engine mutations for logs."""

from __future__ import annotations

import json
import sys
from typing import Any

from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def summarize_mutation(mutation: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a mutation object.

    Args:
        mutation: Mutation instance (or None).

    Returns:
        A dictionary suitable for logging or serialization.
    """
    if mutation is None:
        return {"mutation": None}

    d: dict[str, Any] = {"mutation": getattr(mutation, "kind", mutation.__class__.__name__)}
    task_id = getattr(mutation, "task_id", None)
    if task_id is not None:
        d["task_id"] = task_id

    after = getattr(mutation, "after", {}) or {}
    before = getattr(mutation, "before", {}) or {}
    d["created_n"] = sum(1 for tid, task in after.items() if task is not None and before.get(tid) is None)
    d["deleted_n"] = sum(1 for task in after.values() if task is None)
    d["patched_n"] = len(getattr(mutation, "patches", {}) or {})
    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
