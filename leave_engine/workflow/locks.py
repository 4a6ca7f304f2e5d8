"""Per-request mutexes for workflow transitions.

A lock lives only while some coroutine holds or waits on it; the registry
keeps weak references so finished requests do not accumulate.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator

from leave_engine.common.constants import RequestKind


class RequestLockRegistry:
    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[tuple[str, uuid.UUID], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, kind: RequestKind, request_id: uuid.UUID) -> asyncio.Lock:
        key = (kind.value, request_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, kind: RequestKind, request_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._lock_for(kind, request_id)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


request_locks = RequestLockRegistry()
