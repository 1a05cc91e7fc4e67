from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import DEPOT, VIN, FakeProvider, shift

from fleetstate.config import FleetConfig, KnownSite
from fleetstate.models.events import FleetEvent, FleetEventType
from fleetstate.models.state import DerivedState, PlaceSource
from fleetstate.monitor import FleetMonitor
from fleetstate.store.memory import InMemorySignalStore

SITE = KnownSite(name="Acme Depot", latitude=DEPOT[0], longitude=DEPOT[1], radius_m=150)


def _monitor(store: InMemorySignalStore, *, grace: float, sites=(SITE,)) -> FleetMonitor:
    return FleetMonitor(
        FleetConfig(vehicle_ids=(VIN,), parking_grace_seconds=grace, known_sites=sites),
        store=store,
        provider=FakeProvider(),
    )


@pytest.mark.asyncio
async def test_parking_confirmed_after_grace_keeps_ignition_off_time(
    store: InMemorySignalStore, make_signal, t0
) -> None:
    events: list[FleetEvent] = []
    async with _monitor(store, grace=60.0) as monitor:
        monitor.events.subscribe(events.append)
        first = await monitor.process_signal(make_signal(at=t0))
        assert monitor.parking.pending(VIN) is not None
        assert monitor.parking.open_session(VIN) is None

        second = await monitor.process_signal(make_signal(at=t0 + timedelta(seconds=90)))

    assert first.state.state is DerivedState.PARKED
    assert second.state.state is DerivedState.PARKED
    assert second.state.state_since == t0

    (session,) = store.all_parking_sessions(VIN)
    assert session.ignition_off_time == t0
    assert session.parking_start_time == t0 + timedelta(seconds=60)
    assert session.location.address == "Acme Depot"
    assert session.location.place_source is PlaceSource.CLIENT
    assert [e.type for e in events] == [FleetEventType.PARKING_CONFIRMED]


@pytest.mark.asyncio
async def test_grace_timer_confirms_without_new_signal(store: InMemorySignalStore, make_signal, t0) -> None:
    async with _monitor(store, grace=0.01) as monitor:
        await monitor.process_signal(make_signal(at=t0))
        for _ in range(50):
            if monitor.parking.open_session(VIN) is not None:
                break
            await asyncio.sleep(0.01)

    (session,) = store.all_parking_sessions(VIN)
    assert session.ignition_off_time == t0


@pytest.mark.asyncio
async def test_ignition_cycles_while_parked(store: InMemorySignalStore, make_signal, t0) -> None:
    elsewhere = shift(*DEPOT, north_m=2000)

    async with _monitor(store, grace=0.0, sites=()) as monitor:
        await monitor.process_signal(make_signal(at=t0))
        climate = await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=5), ignition="On"))
        assert climate.state.state is DerivedState.PARKED
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=5, seconds=20)))

        (session,) = store.all_parking_sessions(VIN)
        (cycle,) = session.ignition_cycles
        assert cycle.cycle_number == 1
        assert cycle.duration_minutes == pytest.approx(20 / 60)
        assert store.all_trips(VIN) == []

        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=10), position=elsewhere, ignition="On"))

    (session,) = store.all_parking_sessions(VIN)
    assert not session.is_currently_parked
    assert session.parking_end_time == t0 + timedelta(minutes=10)
    assert session.total_parking_minutes == pytest.approx(10.0)
    assert len(store.all_trips(VIN)) == 1


@pytest.mark.asyncio
async def test_open_sessions_are_rehydrated(store: InMemorySignalStore, make_signal, t0) -> None:
    async with _monitor(store, grace=0.0) as monitor:
        await monitor.process_signal(make_signal(at=t0))

    async with _monitor(store, grace=0.0) as restarted:
        session = restarted.parking.open_session(VIN)
        assert session is not None
        assert session.ignition_off_time == t0


@pytest.mark.asyncio
async def test_ignition_burst_after_long_park_stays_parked(store: InMemorySignalStore, make_signal, t0) -> None:
    # No route points are written while parked, so the GPS history is empty by the time of the burst.
    async with _monitor(store, grace=60.0, sites=()) as monitor:
        await monitor.process_signal(make_signal(at=t0))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=20)))
        burst = await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=40), ignition="On"))
        after = await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=40, seconds=20)))

    assert burst.state.state is DerivedState.PARKED
    assert burst.reason == "ignition_cycle"
    assert after.state.state_since == t0
    assert store.all_trips(VIN) == []

    (session,) = store.all_parking_sessions(VIN)
    assert session.is_currently_parked
    (cycle,) = session.ignition_cycles
    assert cycle.ignition_on_time == t0 + timedelta(minutes=40)
    assert cycle.duration_minutes == pytest.approx(20 / 60)
