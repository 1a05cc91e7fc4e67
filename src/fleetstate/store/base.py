"""Structural signal store interface.

Engine services depend on this protocol so tests can pass the in-memory
implementation while production uses MongoDB.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from fleetstate.models.parking import ParkingSession
from fleetstate.models.signal import SignalDecision, TelemetrySignal
from fleetstate.models.state import CanonicalVehicleState
from fleetstate.models.tracking import VehicleTracking
from fleetstate.models.trip import RoutePoint, Trip


class SignalStore(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    # Signals
    async def insert_signal(self, signal: TelemetrySignal, decision: SignalDecision) -> None: ...

    async def latest_signal(self, vehicle_id: str) -> TelemetrySignal | None:
        """Newest stored signal across all retention tiers."""
        ...

    async def signal_history(
        self,
        vehicle_id: str,
        since: datetime,
        until: datetime | None = None,
        limit: int = 1000,
    ) -> list[TelemetrySignal]:
        """Stored signals of all tiers, oldest first."""
        ...

    # Canonical state
    async def get_state(self, vehicle_id: str) -> CanonicalVehicleState | None: ...

    async def save_state(self, state: CanonicalVehicleState) -> None: ...

    # Route points
    async def insert_route_point(self, point: RoutePoint) -> None: ...

    async def recent_route_points(self, vehicle_id: str, since: datetime, limit: int) -> list[RoutePoint]:
        """Route points at or after *since*, newest first."""
        ...

    async def route_points_between(self, vehicle_id: str, start: datetime, end: datetime) -> list[RoutePoint]:
        """Route points in ``[start, end]``, oldest first."""
        ...

    # Trips
    async def get_active_trip(self, vehicle_id: str) -> Trip | None: ...

    async def get_trip(self, trip_id: str) -> Trip | None: ...

    async def insert_trip(self, trip: Trip) -> None:
        """Insert *trip*; raises ``ActiveTripExistsError`` when it would be a second active trip."""
        ...

    async def update_trip(self, trip: Trip) -> None: ...

    async def append_trip_route_point(self, trip_id: str, point: RoutePoint, keep_last: int) -> None: ...

    async def trips_between(self, vehicle_id: str, start: datetime, end: datetime) -> list[Trip]:
        """Trips overlapping ``[start, end]``, oldest first."""
        ...

    async def latest_closed_trip(self, vehicle_id: str, since: datetime) -> Trip | None: ...

    # Parking sessions
    async def list_open_parking_sessions(self) -> list[ParkingSession]: ...

    async def insert_parking_session(self, session: ParkingSession) -> None: ...

    async def update_parking_session(self, session: ParkingSession) -> None: ...

    # Tracking arena
    async def load_tracking(self) -> list[VehicleTracking]: ...

    async def save_tracking(self, tracking: VehicleTracking) -> None: ...
