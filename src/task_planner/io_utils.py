"""Locked, atomic YAML persistence for the `.task_planner/` state directory."""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import IO, Any, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES

# One in-process lock per lock file, shared by every StateLock on that path.
_THREAD_LOCKS: dict[Path, threading.RLock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


def _thread_lock_for(path: Path) -> threading.RLock:
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get(path)
        if lock is None:
            lock = _THREAD_LOCKS[path] = threading.RLock()
        return lock


def _os_lock(handle: IO[str]) -> None:
    try:
        import fcntl
    except ImportError:
        if os.name == "nt":
            import msvcrt
            handle.seek(0)
            handle.truncate(WINDOWS_LOCK_BYTES)
            handle.flush()
            msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, WINDOWS_LOCK_BYTES)
        return
    fcntl.flock(handle, fcntl.LOCK_EX)


def _os_unlock(handle: IO[str]) -> None:
    try:
        import fcntl
    except ImportError:
        if os.name == "nt":
            import msvcrt
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)
        return
    fcntl.flock(handle, fcntl.LOCK_UN)


class StateLock:
    """Exclusive lock on a state file, across threads and processes.

    Threads in this process queue on a shared per-path lock before taking the
    OS-level lock, so one instance can be used from worker threads safely.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self._thread_lock = _thread_lock_for(lock_path.resolve())
        self._local = threading.local()

    def __enter__(self) -> "StateLock":
        self._thread_lock.acquire()
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            try:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                handle = open(self.lock_path, "w")
                _os_lock(handle)
            except BaseException:
                self._thread_lock.release()
                raise
            self._local.handle = handle
        self._local.depth = depth + 1
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._local.depth -= 1
        try:
            if self._local.depth == 0:
                handle: Optional[IO[str]] = getattr(self._local, "handle", None)
                self._local.handle = None
                if handle is not None:
                    _os_unlock(handle)
                    handle.close()
        finally:
            self._thread_lock.release()


def _load_yaml_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load a YAML mapping and return (data, error_message).

    Parse and IO failures are reported instead of raised so callers can avoid
    overwriting a corrupted durable state file.  An empty file counts as
    *default*.
    """
    if not path.exists():
        return default, None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected object, got {type(data).__name__}"
    return data, None


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    """Write *data* to a sibling temp file, fsync it, then rename over *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False, default_flow_style=False, allow_unicode=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
