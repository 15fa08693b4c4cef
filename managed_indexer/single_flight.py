"""Share one in-flight coroutine between concurrent callers asking for the same key."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Generic, Hashable, List, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Map of key -> running task.

    ``do(key, fn)`` starts ``fn()`` when nothing is running for ``key`` and
    otherwise attaches to the running task. The task is registered before
    the first suspension point, and its entry is dropped when it finishes,
    successfully or not, so the next call starts fresh.
    """

    def __init__(self) -> None:
        self._calls: Dict[Hashable, "asyncio.Task[T]"] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    def keys(self) -> List[Hashable]:
        return list(self._calls)

    def __len__(self) -> int:
        return len(self._calls)

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, fn))
            self._calls[key] = task
        # A cancelled caller must not cancel the fetch other callers share
        return await asyncio.shield(task)

    async def _run(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            del self._calls[key]
