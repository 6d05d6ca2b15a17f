"""Per-name mutual exclusion shared by storage and policy."""

import asyncio
import sys
import threading
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLock:
    """Per-key cooperative lock with an optional thread lock on free-threaded builds.

    Unrelated keys never contend. With the GIL enabled only an ``asyncio.Lock``
    is taken; without it a ``threading.Lock`` is held around the async lock.

    The thread lock blocks the event loop while held, so it is only safe around
    bodies that never suspend. Pass ``thread_locks=False`` for bodies that await.
    """

    def __init__(self, *, thread_locks: bool = True) -> None:
        self._async_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._thread_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())
        self._use_thread_locks = thread_locks and not self._gil_enabled

    @asynccontextmanager
    async def locked(self, key: str) -> AsyncIterator[None]:
        async_lock = self._async_locks[key]
        if not self._use_thread_locks:
            await async_lock.acquire()
            try:
                yield
            finally:
                async_lock.release()
            return

        thread_lock = self._thread_locks[key]
        thread_lock.acquire()
        try:
            await async_lock.acquire()
        except Exception:
            thread_lock.release()
            raise
        try:
            yield
        finally:
            async_lock.release()
            thread_lock.release()
