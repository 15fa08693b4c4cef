"""Process-wide bound on concurrent uploads."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class ConcurrencyLimiter:
    """Counting semaphore gating coroutine work.

    At most ``limit`` calls to ``run`` execute at once; the rest wait in
    arrival order. A failing call releases its slot like any other.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._active = 0
        self._pending = 0

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return self._pending

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        self._pending += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._pending -= 1
        self._active += 1
        try:
            return await fn(*args, **kwargs)
        finally:
            self._active -= 1
            self._semaphore.release()

    def __repr__(self) -> str:
        return f"ConcurrencyLimiter(limit={self.limit}, active={self._active}, pending={self._pending})"
