"""Cancellable grace-period timers keyed by ``(kind, vehicle_id)``."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

_logger = logging.getLogger(__name__)

TimerKey = tuple[str, str]


class GraceTimers:
    """Registry of pending grace timers.

    Scheduling a key that is already pending replaces the old timer.
    Callbacks run as tasks; their exceptions are logged.
    """

    def __init__(self) -> None:
        self._handles: dict[TimerKey, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def schedule(self, key: TimerKey, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(max(0.0, delay), self._fire, key, callback)

    def cancel(self, key: TimerKey) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def pending(self, key: TimerKey) -> bool:
        return key in self._handles

    def _fire(self, key: TimerKey, callback: Callable[[], Awaitable[None]]) -> None:
        self._handles.pop(key, None)
        task = asyncio.get_running_loop().create_task(self._run(key, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, key: TimerKey, callback: Callable[[], Awaitable[None]]) -> None:
        try:
            await callback()
        except Exception:
            _logger.exception("Grace timer %s failed for %s", key[0], key[1])

    async def aclose(self) -> None:
        """Cancel pending timers and wait for callbacks already running."""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
