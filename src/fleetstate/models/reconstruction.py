"""Missed-trip candidate model."""

from __future__ import annotations

import enum

from fleetstate.models._base import FleetBaseModel, GeoPoint, UtcDatetime


class ReconstructionMethod(enum.StrEnum):
    LOCATION_JUMP = "locationJump"


class MissedTripCandidate(FleetBaseModel):
    """A gap in route history that looks like an unrecorded trip.

    Ephemeral: only materialized as a trip when accepted.
    """

    vehicle_id: str
    estimated_start: UtcDatetime
    estimated_end: UtcDatetime
    start_location: GeoPoint
    end_location: GeoPoint
    distance_km: float
    battery_drain_pct: float = 0.0
    start_battery_pct: float | None = None
    end_battery_pct: float | None = None
    confidence_pct: float
    method: ReconstructionMethod = ReconstructionMethod.LOCATION_JUMP

    @property
    def duration_minutes(self) -> float:
        return (self.estimated_end - self.estimated_start).total_seconds() / 60
