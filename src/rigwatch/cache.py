"""In-process TTL cache and single-flight guard."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Holds one value together with the monotonic time it was stored."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._value: T | None = None
        self._stamp = 0.0
        self._filled = False

    def get(self) -> T | None:
        now = self._clock()
        with self._lock:
            if self._filled and (now - self._stamp) < self.ttl_seconds:
                return self._value
        return None

    def set(self, value: T) -> None:
        with self._lock:
            self._value = value
            self._stamp = self._clock()
            self._filled = True

    def age(self) -> float | None:
        with self._lock:
            if not self._filled:
                return None
            return self._clock() - self._stamp

    def clear(self) -> None:
        with self._lock:
            self._value = None
            self._stamp = 0.0
            self._filled = False


class SingleFlight:
    """Collapses concurrent calls for the same key onto one in-flight task."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Task[Any]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._pending

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            task = self._pending.get(key)
            if task is None:
                task = asyncio.ensure_future(fn())
                self._pending[key] = task
                task.add_done_callback(lambda done, key=key: self._forget(key, done))
        # Shielded so one cancelled waiter does not cancel the shared call.
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # Mark the exception retrieved; waiters still receive it.
            task.exception()
