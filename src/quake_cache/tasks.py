"""Detached background work that must never hold up or fail a response."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Spawns coroutines on the running loop and remembers them until done.

    Failures are logged and kept in ``failures``; they never reach the
    code that spawned the task. ``drain()`` waits for everything
    outstanding, including tasks spawned while draining.
    """

    def __init__(self):
        self._pending: set[asyncio.Task] = set()
        self.failures: list[tuple[str, BaseException]] = []
        self.completed = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "background") -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)
            self.failures.append((task.get_name(), exc))
        else:
            self.completed += 1

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
