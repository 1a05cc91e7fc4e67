from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import DEPOT, VIN

from fleetstate.engine.tracking import TrackingArena
from fleetstate.exceptions import ActiveTripExistsError
from fleetstate.models.signal import SignalDecision, SignalTier
from fleetstate.models.trip import RoutePoint, Trip, TripLocation
from fleetstate.store.memory import InMemorySignalStore


def _trip(t0, **overrides) -> Trip:
    return Trip(
        vehicle_id=VIN,
        ignition_on_time=t0,
        start_location=TripLocation(latitude=DEPOT[0], longitude=DEPOT[1]),
        **overrides,
    )


@pytest.mark.asyncio
async def test_second_active_trip_is_rejected(store: InMemorySignalStore, t0) -> None:
    first = _trip(t0)
    await store.insert_trip(first)

    with pytest.raises(ActiveTripExistsError) as exc_info:
        await store.insert_trip(_trip(t0 + timedelta(minutes=1)))

    assert exc_info.value.existing_trip_id == first.id
    await store.insert_trip(_trip(t0 - timedelta(hours=1), is_active=False))
    assert len(store.all_trips(VIN)) == 2


@pytest.mark.asyncio
async def test_route_history_keeps_newest_points(store: InMemorySignalStore, t0) -> None:
    trip = _trip(t0)
    await store.insert_trip(trip)
    for minute in range(5):
        point = RoutePoint(
            vehicle_id=VIN,
            timestamp=t0 + timedelta(minutes=minute),
            latitude=DEPOT[0],
            longitude=DEPOT[1],
        )
        await store.append_trip_route_point(trip.id, point, keep_last=3)

    stored = await store.get_trip(trip.id)
    assert stored is not None
    assert [p.timestamp for p in stored.route_points] == [t0 + timedelta(minutes=m) for m in (2, 3, 4)]


@pytest.mark.asyncio
async def test_signal_tiers_expire_independently(store: InMemorySignalStore, make_signal, t0) -> None:
    await store.insert_signal(make_signal(at=t0), SignalDecision(tier=SignalTier.CRITICAL))
    await store.insert_signal(make_signal(at=t0 + timedelta(minutes=1)), SignalDecision(tier=SignalTier.ROUTINE))
    await store.insert_signal(make_signal(at=t0 + timedelta(minutes=2)), SignalDecision(tier=SignalTier.SKIP))

    assert len(await store.signal_history(VIN, t0)) == 2

    removed = store.purge_expired(t0 + timedelta(days=5))

    assert removed == 1
    (remaining,) = await store.signal_history(VIN, t0)
    assert remaining.provider_timestamp == t0


@pytest.mark.asyncio
async def test_tracking_survives_restart(store: InMemorySignalStore, make_signal, t0) -> None:
    arena = TrackingArena(store)
    tracking = arena.get(VIN)
    tracking.observe(make_signal(at=t0, ignition="On"))
    tracking.active_trip_id = "trip-1"
    await arena.flush(VIN)

    restarted = TrackingArena(store)
    assert await restarted.load() == 1
    recovered = restarted.get(VIN)
    assert recovered.active_trip_id == "trip-1"
    assert recovered.last_update == t0
    assert recovered.last_ignition is not None
    assert recovered.last_ignition.is_running
