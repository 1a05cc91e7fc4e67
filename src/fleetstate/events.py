"""Outbound event dispatch."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable

from fleetstate.models.events import FleetEvent

_logger = logging.getLogger(__name__)

FleetEventListener = Callable[[FleetEvent], Awaitable[None] | None]


class EventBus:
    """Fan out :class:`FleetEvent` objects to subscribed listeners.

    Listeners may be plain callables or coroutine functions.  A failing
    listener is logged and never affects the engine or other listeners.
    """

    def __init__(self) -> None:
        self._listeners: list[FleetEventListener] = []

    def subscribe(self, listener: FleetEventListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def publish(self, event: FleetEvent) -> None:
        _logger.info("Event %s for %s at %s", event.type, event.vehicle_id, event.timestamp.isoformat())
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.exception("Event listener failed for %s (%s)", event.vehicle_id, event.type)
