"""
Request coalescing for the local-coordinated cacher.

Used to coordinate concurrent misses for the same key so only one coroutine
runs the fetch while the others await the same task.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Generic, TypeVar

T = TypeVar("T")


class FlightGroup(Generic[T]):
    """At most one in-flight task per key.

    The task is registered under an ``asyncio.Lock`` and removed from the
    registry when it completes, whether it returned or raised, so the next miss
    after completion starts a fresh attempt. Every caller awaits the task
    through ``asyncio.shield``: cancelling one caller does not cancel the fetch
    the others are waiting on.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, "asyncio.Task[T]"] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._tasks)

    def in_flight(self, key: str) -> bool:
        return key in self._tasks

    async def do(self, key: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run ``work`` for ``key`` unless a run is already in flight, then await its result."""
        async with self._lock:
            task = self._tasks.get(key)
            if task is None:
                task = asyncio.create_task(work())
                self._tasks[key] = task
                task.add_done_callback(lambda done, key=key: self._forget(key, done))

        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Task[T]") -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        # Mark the outcome retrieved even if every caller was cancelled.
        if not task.cancelled():
            task.exception()
