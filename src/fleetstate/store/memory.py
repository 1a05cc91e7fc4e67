"""Deterministic in-memory signal store.

Used by tests and single-process runs without MongoDB.  Retention is
applied explicitly through :meth:`InMemorySignalStore.purge_expired`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from fleetstate._constants import ROUTE_POINT_RETENTION_DAYS
from fleetstate.exceptions import ActiveTripExistsError
from fleetstate.models.parking import ParkingSession
from fleetstate.models.signal import STORED_TIERS, SignalDecision, SignalTier, TelemetrySignal
from fleetstate.models.state import CanonicalVehicleState
from fleetstate.models.tracking import VehicleTracking
from fleetstate.models.trip import RoutePoint, Trip


@dataclass(frozen=True)
class _StoredSignal:
    signal: TelemetrySignal
    decision: SignalDecision
    expires_at: datetime | None


class InMemorySignalStore:
    """In-memory :class:`~fleetstate.store.base.SignalStore`."""

    def __init__(self) -> None:
        self._signals: dict[SignalTier, dict[str, list[_StoredSignal]]] = {tier: {} for tier in STORED_TIERS}
        self._states: dict[str, CanonicalVehicleState] = {}
        self._route_points: dict[str, list[RoutePoint]] = {}
        self._trips: dict[str, Trip] = {}
        self._parking: dict[str, ParkingSession] = {}
        self._tracking: dict[str, VehicleTracking] = {}
        self.closed = False

    async def connect(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    async def insert_signal(self, signal: TelemetrySignal, decision: SignalDecision) -> None:
        if not decision.should_store:
            return
        retention = decision.tier.retention
        expires_at = signal.provider_timestamp + retention if retention is not None else None
        bucket = self._signals[decision.tier].setdefault(signal.vehicle_id, [])
        bucket.append(_StoredSignal(signal=signal, decision=decision, expires_at=expires_at))

    def _all_signals(self, vehicle_id: str) -> list[_StoredSignal]:
        entries: list[_StoredSignal] = []
        for tier in STORED_TIERS:
            entries.extend(self._signals[tier].get(vehicle_id, []))
        entries.sort(key=lambda entry: entry.signal.provider_timestamp)
        return entries

    async def latest_signal(self, vehicle_id: str) -> TelemetrySignal | None:
        entries = self._all_signals(vehicle_id)
        return entries[-1].signal if entries else None

    async def signal_history(
        self,
        vehicle_id: str,
        since: datetime,
        until: datetime | None = None,
        limit: int = 1000,
    ) -> list[TelemetrySignal]:
        result = [
            entry.signal
            for entry in self._all_signals(vehicle_id)
            if entry.signal.provider_timestamp >= since and (until is None or entry.signal.provider_timestamp <= until)
        ]
        return result[:limit]

    def stored_decisions(self, vehicle_id: str) -> list[SignalDecision]:
        return [entry.decision for entry in self._all_signals(vehicle_id)]

    def purge_expired(self, now: datetime) -> int:
        """Drop signals and route points past their retention; returns the number removed."""
        removed = 0
        for buckets in self._signals.values():
            for vehicle_id, entries in buckets.items():
                kept = [e for e in entries if e.expires_at is None or e.expires_at > now]
                removed += len(entries) - len(kept)
                buckets[vehicle_id] = kept
        cutoff = now - timedelta(days=ROUTE_POINT_RETENTION_DAYS)
        for vehicle_id, points in self._route_points.items():
            kept_points = [p for p in points if p.timestamp > cutoff]
            removed += len(points) - len(kept_points)
            self._route_points[vehicle_id] = kept_points
        return removed

    # ------------------------------------------------------------------
    # Canonical state
    # ------------------------------------------------------------------

    async def get_state(self, vehicle_id: str) -> CanonicalVehicleState | None:
        return self._states.get(vehicle_id)

    async def save_state(self, state: CanonicalVehicleState) -> None:
        self._states[state.vehicle_id] = state

    # ------------------------------------------------------------------
    # Route points
    # ------------------------------------------------------------------

    async def insert_route_point(self, point: RoutePoint) -> None:
        points = self._route_points.setdefault(point.vehicle_id, [])
        points.append(point)
        points.sort(key=lambda p: p.timestamp)

    async def recent_route_points(self, vehicle_id: str, since: datetime, limit: int) -> list[RoutePoint]:
        points = [p for p in self._route_points.get(vehicle_id, []) if p.timestamp >= since]
        points.reverse()
        return points[:limit]

    async def route_points_between(self, vehicle_id: str, start: datetime, end: datetime) -> list[RoutePoint]:
        return [p for p in self._route_points.get(vehicle_id, []) if start <= p.timestamp <= end]

    # ------------------------------------------------------------------
    # Trips
    # ------------------------------------------------------------------

    def _find_active(self, vehicle_id: str) -> Trip | None:
        for trip in self._trips.values():
            if trip.vehicle_id == vehicle_id and trip.is_active:
                return trip
        return None

    async def get_active_trip(self, vehicle_id: str) -> Trip | None:
        return self._find_active(vehicle_id)

    async def get_trip(self, trip_id: str) -> Trip | None:
        return self._trips.get(trip_id)

    async def insert_trip(self, trip: Trip) -> None:
        # Check and insert run without yielding to the loop.
        if trip.is_active:
            existing = self._find_active(trip.vehicle_id)
            if existing is not None:
                raise ActiveTripExistsError(
                    f"Vehicle {trip.vehicle_id} already has active trip {existing.id}",
                    vehicle_id=trip.vehicle_id,
                    existing_trip_id=existing.id,
                )
        self._trips[trip.id] = trip

    async def update_trip(self, trip: Trip) -> None:
        self._trips[trip.id] = trip

    async def append_trip_route_point(self, trip_id: str, point: RoutePoint, keep_last: int) -> None:
        trip = self._trips.get(trip_id)
        if trip is not None:
            self._trips[trip_id] = trip.with_route_point(point, keep_last)

    async def trips_between(self, vehicle_id: str, start: datetime, end: datetime) -> list[Trip]:
        result = []
        for trip in self._trips.values():
            if trip.vehicle_id != vehicle_id or trip.ignition_on_time > end:
                continue
            if trip.ignition_off_time is not None and trip.ignition_off_time < start:
                continue
            result.append(trip)
        result.sort(key=lambda t: t.ignition_on_time)
        return result

    async def latest_closed_trip(self, vehicle_id: str, since: datetime) -> Trip | None:
        closed = [
            trip
            for trip in self._trips.values()
            if trip.vehicle_id == vehicle_id
            and not trip.is_active
            and trip.ignition_off_time is not None
            and trip.ignition_off_time >= since
        ]
        return max(closed, key=lambda t: t.ignition_off_time or t.ignition_on_time, default=None)

    def all_trips(self, vehicle_id: str) -> list[Trip]:
        return sorted((t for t in self._trips.values() if t.vehicle_id == vehicle_id), key=lambda t: t.ignition_on_time)

    # ------------------------------------------------------------------
    # Parking sessions
    # ------------------------------------------------------------------

    async def list_open_parking_sessions(self) -> list[ParkingSession]:
        return [s for s in self._parking.values() if s.is_currently_parked]

    async def insert_parking_session(self, session: ParkingSession) -> None:
        self._parking[session.id] = session

    async def update_parking_session(self, session: ParkingSession) -> None:
        self._parking[session.id] = session

    def all_parking_sessions(self, vehicle_id: str) -> list[ParkingSession]:
        return sorted(
            (s for s in self._parking.values() if s.vehicle_id == vehicle_id),
            key=lambda s: s.parking_start_time,
        )

    # ------------------------------------------------------------------
    # Tracking arena
    # ------------------------------------------------------------------

    async def load_tracking(self) -> list[VehicleTracking]:
        return [t.model_copy(deep=True) for t in self._tracking.values()]

    async def save_tracking(self, tracking: VehicleTracking) -> None:
        self._tracking[tracking.vehicle_id] = tracking.model_copy(deep=True)
