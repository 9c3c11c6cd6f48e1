"""Load optional planner configuration from `.task_planner/config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from .constants import CONFIG_FILE, DEFAULT_LOG_LEVEL, DEFAULT_OWNER, STATE_DIR_NAME
from .io_utils import _load_yaml_with_error


VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def load_planner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional planner config file.

    Args:
        project_dir: Directory holding the `.task_planner/` state directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_yaml_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def get_engine_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the engine block, filling in defaults.

    Args:
        config: Planner configuration dictionary.

    Returns:
        A mapping with a boolean `gate_direct_done` key.
    """
    raw = _get_nested(config, "engine")
    raw = raw if isinstance(raw, dict) else {}
    return {"gate_direct_done": bool(raw.get("gate_direct_done", False))}


def get_logging_config(config: dict[str, Any]) -> dict[str, Any]:
    raw = _get_nested(config, "logging")
    raw = raw if isinstance(raw, dict) else {}
    level = str(raw.get("level") or DEFAULT_LOG_LEVEL).upper()
    if level not in VALID_LOG_LEVELS:
        level = DEFAULT_LOG_LEVEL
    return {"level": level}


def get_owner(config: dict[str, Any]) -> str:
    """Resolve the acting owner: config `owner`, then `$USER`, then the default."""
    raw = config.get("owner")
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    env_user = os.environ.get("USER", "").strip()
    return env_user or DEFAULT_OWNER
