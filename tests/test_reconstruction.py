from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import DEPOT, VIN, shift

from fleetstate.engine.reconstruction import MissedTripReconstructor, score_candidate
from fleetstate.models.reconstruction import ReconstructionMethod
from fleetstate.models.trip import DataSource, DistanceSource, RoutePoint, Trip, TripLocation
from fleetstate.store.memory import InMemorySignalStore


def _point(at, position, battery) -> RoutePoint:
    return RoutePoint(
        vehicle_id=VIN,
        timestamp=at,
        latitude=position[0],
        longitude=position[1],
        battery_level=battery,
    )


async def _seed_jump(store: InMemorySignalStore, t0) -> None:
    await store.insert_route_point(_point(t0, DEPOT, 80.0))
    await store.insert_route_point(_point(t0 + timedelta(minutes=12), shift(*DEPOT, north_m=250), 77.0))


def test_score_components() -> None:
    # 5 (distance) + 30 (drain, capped) + 20 (gap) + 10 (plausible speed)
    assert score_candidate(0.25, 3.0, 12) == pytest.approx(65.0)
    assert score_candidate(10.0, 0.0, 600) == pytest.approx(40.0 + 0 + 0 + 10)
    assert score_candidate(0.15, -2.0, 6) == pytest.approx(3.0 + 0 + 0 + 10)


@pytest.mark.asyncio
async def test_location_jump_becomes_candidate(store: InMemorySignalStore, t0) -> None:
    await _seed_jump(store, t0)
    reconstructor = MissedTripReconstructor(store, clock=lambda: t0 + timedelta(hours=1))

    (candidate,) = await reconstructor.find_candidates(VIN)

    assert candidate.method is ReconstructionMethod.LOCATION_JUMP
    assert candidate.confidence_pct == pytest.approx(65.0, abs=0.01)
    assert candidate.distance_km == pytest.approx(0.25, abs=1e-3)
    assert candidate.battery_drain_pct == pytest.approx(3.0)
    assert candidate.duration_minutes == pytest.approx(12.0)


@pytest.mark.asyncio
async def test_gap_covered_by_known_trip_is_skipped(store: InMemorySignalStore, t0) -> None:
    await _seed_jump(store, t0)
    await store.insert_trip(
        Trip(
            vehicle_id=VIN,
            ignition_on_time=t0 + timedelta(minutes=1),
            ignition_off_time=t0 + timedelta(minutes=11),
            is_active=False,
            start_location=TripLocation(latitude=DEPOT[0], longitude=DEPOT[1]),
        )
    )
    reconstructor = MissedTripReconstructor(store, clock=lambda: t0 + timedelta(hours=1))

    assert await reconstructor.find_candidates(VIN) == []


@pytest.mark.asyncio
async def test_short_hops_and_low_scores_are_ignored(store: InMemorySignalStore, t0) -> None:
    await store.insert_route_point(_point(t0, DEPOT, 80.0))
    # Too close in time.
    await store.insert_route_point(_point(t0 + timedelta(minutes=4), shift(*DEPOT, north_m=3000), 79.0))
    # Far enough apart but no drain and an implausible gap scores below the cut-off.
    await store.insert_route_point(_point(t0 + timedelta(hours=8), shift(*DEPOT, north_m=3500), 79.0))
    reconstructor = MissedTripReconstructor(store, clock=lambda: t0 + timedelta(hours=9))

    assert await reconstructor.find_candidates(VIN) == []


@pytest.mark.asyncio
async def test_reconstruct_persists_closed_trip(store: InMemorySignalStore, t0) -> None:
    await _seed_jump(store, t0)
    reconstructor = MissedTripReconstructor(store, clock=lambda: t0 + timedelta(hours=1))
    (candidate,) = await reconstructor.find_candidates(VIN)

    trip = await reconstructor.reconstruct(candidate)

    assert not trip.is_active
    assert trip.data_source is DataSource.RECONSTRUCTED
    assert trip.distance_source is DistanceSource.GPS
    assert trip.distance_miles == pytest.approx(0.25 * 0.621371, rel=1e-3)
    assert [p.ignition_status.value for p in trip.route_points] == ["On", "Off"]
    assert store.all_trips(VIN) == [trip]
    points = await store.route_points_between(VIN, t0, t0 + timedelta(minutes=12))
    assert len(points) == 4
    # Once recorded, the gap is covered and no longer reported.
    assert await reconstructor.find_candidates(VIN) == []
