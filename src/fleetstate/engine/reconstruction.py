"""Missed-trip reconstruction.

Scans route history for gaps where the vehicle appears at a different
place with no trip recorded in between, scores each gap and, when
accepted, materializes it as a closed trip marked ``reconstructed``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from fleetstate._constants import (
    KM_TO_MILES,
    RECONSTRUCTION_MIN_CONFIDENCE,
    RECONSTRUCTION_MIN_DISTANCE_M,
    RECONSTRUCTION_MIN_GAP_SECONDS,
)
from fleetstate._geo import format_coordinates, haversine_m
from fleetstate.exceptions import StoreError
from fleetstate.models.reconstruction import MissedTripCandidate, ReconstructionMethod
from fleetstate.models.signal import IgnitionStatus
from fleetstate.models.trip import DataSource, DistanceSource, RoutePoint, Trip, TripLocation
from fleetstate.store.base import SignalStore

_logger = logging.getLogger(__name__)


def score_candidate(distance_km: float, battery_drain_pct: float, gap_minutes: float) -> float:
    """Confidence (0-100) that a location jump was a real trip.

    Parameters
    ----------
    distance_km
        Straight-line distance between the two samples.
    battery_drain_pct
        Drop in state of charge across the gap; negative values count as zero.
    gap_minutes
        Time between the two samples.
    """
    score = min(40.0, distance_km * 20)
    score += min(30.0, max(0.0, battery_drain_pct) * 10)
    if 10 <= gap_minutes <= 180:
        score += 20
    if gap_minutes > 0:
        speed_kmh = distance_km / (gap_minutes / 60)
        if 0.5 < speed_kmh < 50:
            score += 10
    return score


def _overlaps(trip: Trip, start: datetime, end: datetime) -> bool:
    trip_end = trip.ignition_off_time or trip.last_updated or trip.ignition_on_time
    if trip.is_active:
        trip_end = max(trip_end, end)
    return trip.ignition_on_time <= end and trip_end >= start


class MissedTripReconstructor:
    """Find and reconstruct trips the live pipeline did not see."""

    def __init__(
        self,
        store: SignalStore,
        *,
        lookback: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._lookback = lookback
        self._clock = clock or (lambda: datetime.now(UTC))

    async def find_candidates(
        self,
        vehicle_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[MissedTripCandidate]:
        """Candidates for *vehicle_id*, most confident first."""
        until = until or self._clock()
        since = since or until - self._lookback
        points = await self._store.route_points_between(vehicle_id, since, until)
        if len(points) < 2:
            return []
        trips = await self._store.trips_between(vehicle_id, since, until)

        candidates: list[MissedTripCandidate] = []
        for before, after in zip(points, points[1:], strict=False):
            candidate = self._evaluate(vehicle_id, before, after, trips)
            if candidate is not None:
                candidates.append(candidate)
        candidates.sort(key=lambda c: (-c.confidence_pct, -c.estimated_end.timestamp()))
        if candidates:
            _logger.info("Found %d missed trip candidates for %s", len(candidates), vehicle_id)
        return candidates

    def _evaluate(
        self,
        vehicle_id: str,
        before: RoutePoint,
        after: RoutePoint,
        trips: list[Trip],
    ) -> MissedTripCandidate | None:
        distance_m = haversine_m(before.latitude, before.longitude, after.latitude, after.longitude)
        gap_s = (after.timestamp - before.timestamp).total_seconds()
        if distance_m <= RECONSTRUCTION_MIN_DISTANCE_M or gap_s <= RECONSTRUCTION_MIN_GAP_SECONDS:
            return None
        if any(_overlaps(trip, before.timestamp, after.timestamp) for trip in trips):
            return None

        drain = 0.0
        if before.battery_level is not None and after.battery_level is not None:
            drain = before.battery_level - after.battery_level
        distance_km = distance_m / 1000
        confidence = score_candidate(distance_km, drain, gap_s / 60)
        if confidence <= RECONSTRUCTION_MIN_CONFIDENCE:
            _logger.debug(
                "Location jump for %s at %s scored %.0f; ignored",
                vehicle_id,
                after.timestamp.isoformat(),
                confidence,
            )
            return None
        return MissedTripCandidate(
            vehicle_id=vehicle_id,
            estimated_start=before.timestamp,
            estimated_end=after.timestamp,
            start_location=before.location,
            end_location=after.location,
            distance_km=distance_km,
            battery_drain_pct=drain,
            start_battery_pct=before.battery_level,
            end_battery_pct=after.battery_level,
            confidence_pct=confidence,
            method=ReconstructionMethod.LOCATION_JUMP,
        )

    async def find_missed_trips(self, vehicle_ids: Iterable[str]) -> dict[str, list[MissedTripCandidate]]:
        """Candidates per vehicle; a failing vehicle is logged and skipped."""
        results: dict[str, list[MissedTripCandidate]] = {}
        for vehicle_id in vehicle_ids:
            try:
                candidates = await self.find_candidates(vehicle_id)
            except StoreError:
                _logger.error("Missed trip scan failed for %s", vehicle_id, exc_info=True)
                continue
            if candidates:
                results[vehicle_id] = candidates
        return results

    async def reconstruct(self, candidate: MissedTripCandidate) -> Trip:
        """Persist *candidate* as a closed trip with two synthetic route points."""
        start = RoutePoint(
            vehicle_id=candidate.vehicle_id,
            timestamp=candidate.estimated_start,
            latitude=candidate.start_location.latitude,
            longitude=candidate.start_location.longitude,
            battery_level=candidate.start_battery_pct,
            ignition_status=IgnitionStatus.ON,
            is_moving=True,
            data_source=DataSource.RECONSTRUCTED,
        )
        end = RoutePoint(
            vehicle_id=candidate.vehicle_id,
            timestamp=candidate.estimated_end,
            latitude=candidate.end_location.latitude,
            longitude=candidate.end_location.longitude,
            battery_level=candidate.end_battery_pct,
            ignition_status=IgnitionStatus.OFF,
            is_moving=False,
            data_source=DataSource.RECONSTRUCTED,
        )
        trip = Trip(
            vehicle_id=candidate.vehicle_id,
            ignition_on_time=candidate.estimated_start,
            ignition_off_time=candidate.estimated_end,
            is_active=False,
            start_location=self._location(start),
            end_location=self._location(end),
            start_battery_pct=candidate.start_battery_pct,
            end_battery_pct=candidate.end_battery_pct,
            distance_miles=candidate.distance_km * KM_TO_MILES,
            distance_source=DistanceSource.GPS,
            battery_used_pct=candidate.battery_drain_pct,
            total_run_time_minutes=candidate.duration_minutes,
            route_points=(start, end),
            data_source=DataSource.RECONSTRUCTED,
            last_updated=candidate.estimated_end,
        )
        await self._store.insert_trip(trip)
        await self._store.insert_route_point(start)
        await self._store.insert_route_point(end)
        _logger.info(
            "Reconstructed trip %s for %s: %s -> %s (%.0f%% confidence)",
            trip.id,
            candidate.vehicle_id,
            candidate.estimated_start.isoformat(),
            candidate.estimated_end.isoformat(),
            candidate.confidence_pct,
        )
        return trip

    @staticmethod
    def _location(point: RoutePoint) -> TripLocation:
        return TripLocation(
            latitude=point.latitude,
            longitude=point.longitude,
            address=format_coordinates(point.latitude, point.longitude),
        )
