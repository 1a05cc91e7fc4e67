"""Per-vehicle tracking record kept in the in-memory arena."""

from __future__ import annotations

from pydantic import ConfigDict

from fleetstate.models._base import FleetBaseModel, GeoPoint, UtcDatetime
from fleetstate.models.signal import IgnitionStatus, TelemetrySignal


class VehicleTracking(FleetBaseModel):
    """Mutable working state for one vehicle.

    Mirrored to the store after every update and rehydrated at start.
    """

    model_config = ConfigDict(frozen=False, validate_assignment=False)

    vehicle_id: str
    last_ignition: IgnitionStatus | None = None
    last_location: GeoPoint | None = None
    last_update: UtcDatetime | None = None
    last_battery_pct: float | None = None
    active_trip_id: str | None = None
    inside_home_geofence: bool | None = None
    last_route_point_at: UtcDatetime | None = None
    last_route_point_location: GeoPoint | None = None

    def observe(self, signal: TelemetrySignal) -> None:
        """Record *signal* as the latest sample."""
        self.last_ignition = signal.ignition
        self.last_location = signal.location
        self.last_update = signal.provider_timestamp
        if signal.state_of_charge_pct is not None:
            self.last_battery_pct = signal.state_of_charge_pct
