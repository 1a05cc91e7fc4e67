"""Adaptive polling scheduler.

Polls every vehicle at the business-hours interval during local business
hours and at the off-hours interval otherwise.  A failing vehicle never
prevents the others from being polled, and a failing cycle never stops
the loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from fleetstate.config import FleetConfig

_logger = logging.getLogger(__name__)

PollFn = Callable[[str], Awaitable[Any]]
SweepFn = Callable[[], Awaitable[Any]]


def is_business_hours(now: datetime, tz: ZoneInfo, start_hour: int, end_hour: int) -> bool:
    """True when *now* falls in local ``[start_hour, end_hour)``."""
    local = now.astimezone(tz)
    return start_hour <= local.hour < end_hour


def polling_interval(now: datetime, config: FleetConfig) -> float:
    tz = ZoneInfo(config.time_zone)
    if is_business_hours(now, tz, config.business_hours_start, config.business_hours_end):
        return config.business_interval
    return config.off_hours_interval


def seconds_until_boundary(now: datetime, tz: ZoneInfo, start_hour: int, end_hour: int) -> float:
    """Seconds until the next business-hours start or end in local time."""
    local = now.astimezone(tz)
    candidates: list[datetime] = []
    for day in (0, 1):
        base = (local + timedelta(days=day)).replace(minute=0, second=0, microsecond=0)
        for hour in (start_hour, end_hour):
            if hour >= 24:
                continue
            boundary = base.replace(hour=hour)
            if boundary > local:
                candidates.append(boundary)
    if not candidates:
        return float("inf")
    return (min(candidates) - local).total_seconds()


class PollingScheduler:
    """Run *poll* for every vehicle on an adaptive interval.

    Parameters
    ----------
    poll
        Coroutine function taking a vehicle id.
    vehicle_ids
        Callable returning the vehicles to poll this cycle.
    config
        Source of the time zone, business hours and intervals.
    sweep
        Optional periodic maintenance coroutine (missed-trip sweep), run
        every ``config.reconstruction_interval`` seconds when positive.
    clock
        Returns the current aware time; replaced in tests.
    """

    def __init__(
        self,
        poll: PollFn,
        vehicle_ids: Callable[[], Sequence[str]],
        config: FleetConfig,
        *,
        sweep: SweepFn | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._poll = poll
        self._vehicle_ids = vehicle_ids
        self._config = config
        self._tz = ZoneInfo(config.time_zone)
        self._sweep = sweep
        self._clock = clock or (lambda: datetime.now(UTC))
        self._last_interval: float | None = None
        self._last_sweep: datetime | None = None
        self.cycles = 0

    async def run_cycle(self) -> dict[str, BaseException]:
        """Poll every vehicle concurrently; returns the failures by vehicle id."""
        vehicle_ids = list(self._vehicle_ids())
        results = await asyncio.gather(*(self._poll(vid) for vid in vehicle_ids), return_exceptions=True)
        failures: dict[str, BaseException] = {}
        for vehicle_id, result in zip(vehicle_ids, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failures[vehicle_id] = result
                _logger.error("Polling %s failed: %s", vehicle_id, result, exc_info=result)
        self.cycles += 1
        return failures

    async def _maybe_sweep(self, now: datetime) -> None:
        interval = self._config.reconstruction_interval
        if self._sweep is None or interval <= 0:
            return
        if self._last_sweep is not None and (now - self._last_sweep).total_seconds() < interval:
            return
        self._last_sweep = now
        try:
            await self._sweep()
        except Exception:
            _logger.exception("Missed trip sweep failed")

    def next_delay(self, now: datetime) -> float:
        interval = polling_interval(now, self._config)
        if interval != self._last_interval:
            mode = "business hours" if interval == self._config.business_interval else "off hours"
            _logger.info("Polling every %.0fs (%s)", interval, mode)
            self._last_interval = interval
        boundary = seconds_until_boundary(
            now,
            self._tz,
            self._config.business_hours_start,
            self._config.business_hours_end,
        )
        return max(0.0, min(interval, boundary))

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until *stop* is set."""
        _logger.info("Scheduler started (%s)", self._config.time_zone)
        while not stop.is_set():
            try:
                await self.run_cycle()
                await self._maybe_sweep(self._clock())
            except asyncio.CancelledError:
                raise
            except Exception:
                _logger.exception("Polling cycle failed")
            delay = self.next_delay(self._clock())
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except TimeoutError:
                continue
        _logger.info("Scheduler stopped after %d cycles", self.cycles)
