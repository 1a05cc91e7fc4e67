from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pytest
from conftest import DEPOT, VIN, FakeProvider, shift

from fleetstate.config import FleetConfig, Geofence
from fleetstate.engine.trips import gps_distance_miles, match_provider_trip
from fleetstate.exceptions import ProviderUnavailable
from fleetstate.models.events import FleetEvent, FleetEventType
from fleetstate.models.provider import ProviderTrip
from fleetstate.models.state import DerivedState
from fleetstate.models.trip import DataSource, DistanceSource, RoutePoint
from fleetstate.monitor import FleetMonitor
from fleetstate.store.memory import InMemorySignalStore


@dataclass
class _FakeDistanceAuthority:
    trips: list[ProviderTrip] = field(default_factory=list)
    fail: bool = False
    requests: list[tuple[datetime, datetime]] = field(default_factory=list)

    async def get_trips_in_range(self, vehicle_id: str, start: datetime, end: datetime) -> list[ProviderTrip]:
        self.requests.append((start, end))
        if self.fail:
            raise ProviderUnavailable("trip endpoint down", vehicle_id=vehicle_id)
        return list(self.trips)


def _monitor(store: InMemorySignalStore, *, grace: float = 0.0, authority=None, **config) -> FleetMonitor:
    return FleetMonitor(
        FleetConfig(vehicle_ids=(VIN,), parking_grace_seconds=grace, **config),
        store=store,
        provider=FakeProvider(),
        distance_authority=authority,
    )


def _events(monitor: FleetMonitor) -> list[FleetEvent]:
    captured: list[FleetEvent] = []
    monitor.events.subscribe(captured.append)
    return captured


def test_match_provider_trip_picks_closest_start(t0) -> None:
    near = ProviderTrip(trip_start_time=t0 + timedelta(seconds=40), distance_km=4.2)
    nearer = ProviderTrip(trip_start_time=t0 - timedelta(seconds=10), distance_km=3.0)
    far = ProviderTrip(trip_start_time=t0 + timedelta(minutes=20), distance_km=9.0)

    assert match_provider_trip([near, far, nearer], t0) is nearer
    assert match_provider_trip([far], t0) is None


def test_gps_distance_ignores_jitter(t0) -> None:
    positions = [DEPOT, shift(*DEPOT, north_m=10), shift(*DEPOT, north_m=1009.344 + 10)]
    points = [
        RoutePoint(vehicle_id=VIN, timestamp=t0 + timedelta(minutes=i), latitude=lat, longitude=lon)
        for i, (lat, lon) in enumerate(positions)
    ]

    # 10 m of jitter is dropped; the 1009.344 m segment is kept.
    assert gps_distance_miles(points) == pytest.approx(1009.344 / 1609.344, rel=1e-4)


@pytest.mark.asyncio
async def test_provider_distance_wins_over_gps(store: InMemorySignalStore, make_signal, t0) -> None:
    authority = _FakeDistanceAuthority(
        trips=[ProviderTrip(trip_start_time=t0 + timedelta(seconds=20), distance_km=4.2)]
    )
    route = [DEPOT, shift(*DEPOT, north_m=2500), shift(*DEPOT, north_m=5100)]

    async with _monitor(store, authority=authority) as monitor:
        events = _events(monitor)
        await monitor.process_signal(make_signal(at=t0, position=route[0], ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=3), position=route[1], ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=6), position=route[2], ignition="On"))
        await monitor.process_signal(
            make_signal(at=t0 + timedelta(minutes=7), position=route[2], ignition="Off", state_of_charge_pct=76.0)
        )

    (trip,) = store.all_trips(VIN)
    assert not trip.is_active
    assert trip.distance_source is DistanceSource.PROVIDER
    assert trip.distance_miles == pytest.approx(4.2 * 0.621371)
    assert trip.battery_used_pct == pytest.approx(4.0)
    assert trip.total_run_time_minutes == pytest.approx(7.0)
    assert authority.requests == [(t0 - timedelta(minutes=5), t0 + timedelta(minutes=12))]

    ended = [e for e in events if e.type is FleetEventType.TRIP_ENDED]
    assert ended[0].metrics["distanceSource"] == "provider"
    assert ended[0].metrics["shortTrip"] is False


@pytest.mark.asyncio
async def test_gps_distance_when_provider_fails(store: InMemorySignalStore, make_signal, t0) -> None:
    authority = _FakeDistanceAuthority(fail=True)
    far = shift(*DEPOT, north_m=3000)

    async with _monitor(store, authority=authority) as monitor:
        await monitor.process_signal(make_signal(at=t0, ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=4), position=far, ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=5), position=far, ignition="Off"))

    (trip,) = store.all_trips(VIN)
    assert trip.distance_source is DistanceSource.GPS
    assert trip.distance_miles == pytest.approx(3000 / 1609.344, rel=1e-3)


@pytest.mark.asyncio
async def test_ignition_blip_keeps_single_trip(store: InMemorySignalStore, make_signal, t0) -> None:
    stop = shift(*DEPOT, north_m=1000)

    async with _monitor(store, grace=60.0) as monitor:
        await monitor.process_signal(make_signal(at=t0, ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(seconds=60), position=stop, ignition="On"))
        off = await monitor.process_signal(make_signal(at=t0 + timedelta(seconds=70), position=stop, ignition="Off"))
        assert off.state.state is DerivedState.PARKED
        assert monitor.trips.pending_end(VIN) is not None

        on = await monitor.process_signal(make_signal(at=t0 + timedelta(seconds=80), position=stop, ignition="On"))
        assert on.state.state is DerivedState.TRIP
        assert monitor.trips.pending_end(VIN) is None

        await monitor.process_signal(make_signal(at=t0 + timedelta(seconds=90), position=stop, ignition="Off"))

    trips = store.all_trips(VIN)
    assert len(trips) == 1
    assert trips[0].is_active
    stamps = [p.timestamp for p in trips[0].route_points]
    assert t0 + timedelta(seconds=70) in stamps
    assert t0 + timedelta(seconds=80) in stamps


@pytest.mark.asyncio
async def test_signal_past_grace_closes_trip(store: InMemorySignalStore, make_signal, t0) -> None:
    stop = shift(*DEPOT, north_m=1000)

    async with _monitor(store, grace=60.0) as monitor:
        await monitor.process_signal(make_signal(at=t0, ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=2), position=stop, ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=3), position=stop, ignition="Off"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=5), position=stop, ignition="Off"))

    (trip,) = store.all_trips(VIN)
    assert not trip.is_active
    assert trip.ignition_off_time == t0 + timedelta(minutes=3)
    assert (await store.get_active_trip(VIN)) is None


@pytest.mark.asyncio
async def test_geofence_departure_backdates_trip_start(store: InMemorySignalStore, make_signal, t0) -> None:
    home = Geofence(latitude=DEPOT[0], longitude=DEPOT[1], radius_m=100)
    outside = shift(*DEPOT, north_m=500)

    async with _monitor(store, home_base=home) as monitor:
        await monitor.process_signal(make_signal(at=t0))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=2), position=outside, ignition="On"))

    trip = await store.get_active_trip(VIN)
    assert trip is not None
    assert trip.ignition_on_time == t0 + timedelta(minutes=2) - timedelta(seconds=1)
    marker = trip.route_points[0]
    assert marker.data_source is DataSource.GEOFENCE_DEPARTURE
    assert marker.is_moving
    assert marker.latitude == pytest.approx(shift(*DEPOT, north_m=100)[0], abs=1e-6)


@pytest.mark.asyncio
async def test_short_trip_is_flagged(store: InMemorySignalStore, make_signal, t0) -> None:
    async with _monitor(store) as monitor:
        events = _events(monitor)
        await monitor.process_signal(make_signal(at=t0, ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(seconds=30), ignition="Off"))

    types = [e.type for e in events]
    assert types == [
        FleetEventType.TRIP_STARTED,
        FleetEventType.TRIP_ENDED,
        FleetEventType.IGNITION_OFF,
        FleetEventType.PARKING_CONFIRMED,
    ]
    assert events[1].metrics["shortTrip"] is True


@pytest.mark.asyncio
async def test_same_day_trip_starts_where_previous_ended(store: InMemorySignalStore, make_signal, t0) -> None:
    stop = shift(*DEPOT, north_m=2000)

    async with _monitor(store) as monitor:
        await monitor.process_signal(make_signal(at=t0, ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=3), position=stop, ignition="On"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=4), position=stop, ignition="Off"))
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=30), position=stop, ignition="On"))
        await monitor.process_signal(
            make_signal(at=t0 + timedelta(minutes=31), position=shift(*stop, north_m=400), ignition="On")
        )

    first, second = store.all_trips(VIN)
    assert second.is_active
    assert second.start_location == first.end_location


@pytest.mark.asyncio
async def test_stale_sample_leaves_geofence_untouched(store: InMemorySignalStore, make_signal, t0) -> None:
    home = Geofence(latitude=DEPOT[0], longitude=DEPOT[1], radius_m=100)
    outside = shift(*DEPOT, north_m=500)

    async with _monitor(store, home_base=home) as monitor:
        await monitor.process_signal(make_signal(at=t0 + timedelta(minutes=10)))
        late = await monitor.process_signal(make_signal(at=t0, position=outside, ignition="On"))
        tracking = monitor.arena.get(VIN)

    assert late.stale
    assert tracking.inside_home_geofence is True
    points = await store.route_points_between(VIN, t0 - timedelta(hours=1), t0 + timedelta(hours=1))
    assert [p.timestamp for p in points] == [t0 + timedelta(minutes=10)]
    assert all(p.data_source is DataSource.TELEMETRY for p in points)
    assert len(store.stored_decisions(VIN)) == 1
