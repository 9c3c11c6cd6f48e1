"""Async persistence boundary used by :class:`PlannerSession`.

:class:`TaskBackend` is the contract the engine's session expects from the
authoritative store.  :class:`LocalBackend` satisfies it on top of the
file-backed :class:`TaskStore`, running blocking I/O in worker threads and
delivering committed changes to per-subscriber queues on the event loop.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, AsyncIterator, Callable, Optional, Protocol, Sequence

from .model import Task
from .reconcile import ChangeEvent
from .store import TaskStore


class TaskBackend(Protocol):
    async def fetch(self, owner: str) -> list[Task]: ...

    async def create(self, owner: str, fields: dict[str, Any], now: str) -> Task: ...

    async def patch(self, owner: str, task_id: str, fields: dict[str, Any], now: str) -> Task: ...

    async def patch_many(
        self,
        owner: str,
        patches: dict[str, dict[str, Any]],
        now: str,
        delete_ids: Sequence[str] = (),
    ) -> dict[str, Task]: ...

    async def delete(self, owner: str, task_id: str) -> None: ...

    def subscribe(self, owner: str) -> "ChangeFeed": ...


class ChangeFeed:
    """Async iterator of change events for one owner.

    :meth:`push` may be called from any thread; events are handed to the loop
    the feed was created on.
    """

    _CLOSED = object()

    def __init__(self, owner: str, loop: asyncio.AbstractEventLoop) -> None:
        self.owner = owner
        self._loop = loop
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._on_close: list[Callable[[], None]] = []

    def push(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        if event.record.owner and event.record.owner != self.owner:
            return
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def on_close(self, callback: Callable[[], None]) -> None:
        self._on_close.append(callback)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for callback in self._on_close:
            callback()
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, self._CLOSED)

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item

    async def get(self, timeout: Optional[float] = None) -> ChangeEvent:
        """Next event; raises :class:`asyncio.TimeoutError` after *timeout*."""
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)


class LocalBackend:
    """Serve a :class:`TaskStore` through the async :class:`TaskBackend` contract."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store
        self._feeds: list[ChangeFeed] = []
        self._lock = threading.Lock()
        store.subscribe(self._fan_out)

    def _fan_out(self, event: ChangeEvent) -> None:
        with self._lock:
            feeds = list(self._feeds)
        for feed in feeds:
            feed.push(event)

    async def fetch(self, owner: str) -> list[Task]:
        return await asyncio.to_thread(self.store.fetch, owner)

    async def create(self, owner: str, fields: dict[str, Any], now: str) -> Task:
        return await asyncio.to_thread(self.store.create, owner, fields, now)

    async def patch(self, owner: str, task_id: str, fields: dict[str, Any], now: str) -> Task:
        return await asyncio.to_thread(self.store.patch, owner, task_id, fields, now)

    async def patch_many(
        self,
        owner: str,
        patches: dict[str, dict[str, Any]],
        now: str,
        delete_ids: Sequence[str] = (),
    ) -> dict[str, Task]:
        return await asyncio.to_thread(self.store.patch_many, owner, patches, now, delete_ids)

    async def delete(self, owner: str, task_id: str) -> None:
        await asyncio.to_thread(self.store.delete, owner, task_id)

    def subscribe(self, owner: str) -> ChangeFeed:
        feed = ChangeFeed(owner, asyncio.get_running_loop())

        def _detach() -> None:
            with self._lock:
                if feed in self._feeds:
                    self._feeds.remove(feed)

        feed.on_close(_detach)
        with self._lock:
            self._feeds.append(feed)
        return feed
