from __future__ import annotations

import asyncio
import threading
from typing import Awaitable, Callable, Dict, Hashable, TypeVar

from tokenline.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SingleFlight:
    """Collapse concurrent calls sharing a key into one execution.

    The first caller for a key starts the work as a task; callers arriving
    while it runs await that same task. The key is released by the task
    itself before its result is published, so a call made after completion
    always runs the work again. Results are not cached.
    """

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, asyncio.Future] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._inflight)

    async def execute(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        with self._lock:
            task = self._inflight.get(key)
            leader = task is None
            if leader:
                task = asyncio.ensure_future(self._run(key, fn))
                self._inflight[key] = task
                task.add_done_callback(lambda done, k=key: self._on_done(k, done))
        if not leader:
            logger.debug("single_flight_joined")
        # shield: a cancelled caller must not cancel the work other callers await
        return await asyncio.shield(task)

    async def _run(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            self._forget(key, asyncio.current_task())

    def _forget(self, key: Hashable, task: asyncio.Future) -> None:
        with self._lock:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    def _on_done(self, key: Hashable, task: asyncio.Future) -> None:
        # a task cancelled before its first step never reaches the finally
        self._forget(key, task)
        if not task.cancelled():
            # mark the exception retrieved when every awaiting caller went away
            task.exception()


__all__ = ["SingleFlight"]
