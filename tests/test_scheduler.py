from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest

from fleetstate.config import FleetConfig
from fleetstate.scheduler import PollingScheduler, is_business_hours, polling_interval, seconds_until_boundary

CHICAGO = ZoneInfo("America/Chicago")
CONFIG = FleetConfig(time_zone="America/Chicago", business_interval=5.0, off_hours_interval=600.0)


def test_business_hours_use_local_time() -> None:
    # 05:59 and 21:00 local are outside, 06:00 and 20:59 inside (CST, UTC-6).
    assert not is_business_hours(datetime(2026, 1, 15, 11, 59, tzinfo=UTC), CHICAGO, 6, 21)
    assert is_business_hours(datetime(2026, 1, 15, 12, 0, tzinfo=UTC), CHICAGO, 6, 21)
    assert is_business_hours(datetime(2026, 1, 16, 2, 59, tzinfo=UTC), CHICAGO, 6, 21)
    assert not is_business_hours(datetime(2026, 1, 16, 3, 0, tzinfo=UTC), CHICAGO, 6, 21)


def test_polling_interval_switches() -> None:
    assert polling_interval(datetime(2026, 1, 15, 18, 0, tzinfo=UTC), CONFIG) == 5.0
    assert polling_interval(datetime(2026, 1, 15, 8, 0, tzinfo=UTC), CONFIG) == 600.0


def test_off_hours_wait_stops_at_business_start() -> None:
    # 05:58 local: the next boundary is two minutes away.
    now = datetime(2026, 1, 15, 11, 58, tzinfo=UTC)

    assert seconds_until_boundary(now, CHICAGO, 6, 21) == pytest.approx(120.0)
    scheduler = PollingScheduler(_noop, lambda: [], CONFIG, clock=lambda: now)
    assert scheduler.next_delay(now) == pytest.approx(120.0)


async def _noop(vehicle_id: str) -> None:
    return None


@pytest.mark.asyncio
async def test_one_failing_vehicle_does_not_stop_others() -> None:
    polled: list[str] = []

    async def poll(vehicle_id: str) -> None:
        polled.append(vehicle_id)
        if vehicle_id == "VIN2":
            raise RuntimeError("bad payload")

    scheduler = PollingScheduler(poll, lambda: ["VIN1", "VIN2", "VIN3"], CONFIG)

    failures = await scheduler.run_cycle()

    assert sorted(polled) == ["VIN1", "VIN2", "VIN3"]
    assert list(failures) == ["VIN2"]
    assert scheduler.cycles == 1


@pytest.mark.asyncio
async def test_run_stops_and_sweeps() -> None:
    stop = asyncio.Event()
    sweeps: list[int] = []
    config = FleetConfig(business_interval=0.01, off_hours_interval=0.01, reconstruction_interval=3600.0)

    async def poll(vehicle_id: str) -> None:
        if scheduler.cycles >= 2:
            stop.set()

    async def sweep() -> None:
        sweeps.append(1)
        raise RuntimeError("sweep failed")

    scheduler = PollingScheduler(poll, lambda: ["VIN1"], config, sweep=sweep)

    await asyncio.wait_for(scheduler.run(stop), timeout=5)

    assert scheduler.cycles == 3
    assert sweeps == [1]
