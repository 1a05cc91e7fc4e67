"""Trip and route point models."""

from __future__ import annotations

import enum
import uuid

from pydantic import Field

from fleetstate.models._base import FleetBaseModel, GeoPoint, UtcDatetime
from fleetstate.models.signal import IgnitionStatus
from fleetstate.models.state import PlaceSource


def _new_id() -> str:
    return uuid.uuid4().hex


class DataSource(enum.StrEnum):
    TELEMETRY = "telemetry"
    GEOFENCE_DEPARTURE = "geofence_departure"
    RECONSTRUCTED = "reconstructed"


class DistanceSource(enum.StrEnum):
    PROVIDER = "provider"
    GPS = "gps"


class TripLocation(FleetBaseModel):
    """A position with the place name it resolved to."""

    latitude: float
    longitude: float
    address: str | None = None
    place_source: PlaceSource | None = None

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)


class RoutePoint(FleetBaseModel):
    """A stored GPS sample.  Append-only."""

    vehicle_id: str
    timestamp: UtcDatetime
    latitude: float
    longitude: float
    battery_level: float | None = None
    ignition_status: IgnitionStatus = IgnitionStatus.UNKNOWN
    is_moving: bool = False
    speed: float | None = None
    """Speed in km/h derived from the previous sample."""
    data_source: DataSource = DataSource.TELEMETRY

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)


class Trip(FleetBaseModel):
    """One physical trip.

    At most one trip per vehicle has ``is_active=True``.  Closed trips
    carry the end location, distance and battery usage.
    """

    id: str = Field(default_factory=_new_id)
    vehicle_id: str
    ignition_on_time: UtcDatetime
    ignition_off_time: UtcDatetime | None = None
    is_active: bool = True
    start_location: TripLocation
    end_location: TripLocation | None = None
    start_odometer: float | None = None
    end_odometer: float | None = None
    start_battery_pct: float | None = None
    end_battery_pct: float | None = None
    distance_miles: float | None = None
    distance_source: DistanceSource | None = None
    battery_used_pct: float | None = None
    total_run_time_minutes: float | None = None
    route_points: tuple[RoutePoint, ...] = ()
    data_source: DataSource = DataSource.TELEMETRY
    last_updated: UtcDatetime | None = None

    def with_route_point(self, point: RoutePoint, keep_last: int) -> Trip:
        points = (*self.route_points, point)
        if keep_last > 0:
            points = points[-keep_last:]
        return self.model_copy(update={"route_points": points, "last_updated": point.timestamp})
