"""Canonical vehicle state model."""

from __future__ import annotations

import enum

from fleetstate.models._base import FleetBaseModel, GeoPoint, UtcDatetime


class DerivedState(enum.StrEnum):
    TRIP = "TRIP"
    PARKED = "PARKED"
    CHARGING = "CHARGING"


class PlaceSource(enum.StrEnum):
    """Where a resolved place name came from."""

    CLIENT = "client"
    PLACES = "places"
    COORDINATES = "coordinates"


class Place(FleetBaseModel):
    display_name: str
    source_kind: PlaceSource


class StateMetrics(FleetBaseModel):
    soc: float | None = None
    odometer: float | None = None
    range_miles: int | None = None


class CanonicalVehicleState(FleetBaseModel):
    """Current derived state of a vehicle.

    One record per vehicle with replace semantics.  ``state_since`` only
    moves when ``state`` changes.
    """

    vehicle_id: str
    state: DerivedState
    state_since: UtcDatetime
    last_signal_timestamp: UtcDatetime
    freshness_ms: int = 0
    last_known_location: GeoPoint
    last_known_place: Place | None = None
    metrics: StateMetrics = StateMetrics()
