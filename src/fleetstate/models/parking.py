"""Parking session models."""

from __future__ import annotations

import uuid

from pydantic import Field

from fleetstate.models._base import FleetBaseModel, UtcDatetime
from fleetstate.models.trip import TripLocation


class IgnitionCycle(FleetBaseModel):
    """An ignition on/off cycle while the vehicle stayed parked."""

    cycle_number: int
    ignition_on_time: UtcDatetime
    ignition_off_time: UtcDatetime | None = None
    duration_minutes: float | None = None


class ParkingSession(FleetBaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    vehicle_id: str
    ignition_off_time: UtcDatetime
    parking_start_time: UtcDatetime
    parking_end_time: UtcDatetime | None = None
    location: TripLocation
    ignition_cycles: tuple[IgnitionCycle, ...] = ()
    is_currently_parked: bool = True
    total_parking_minutes: float | None = None

    @property
    def open_cycle(self) -> IgnitionCycle | None:
        if self.ignition_cycles and self.ignition_cycles[-1].ignition_off_time is None:
            return self.ignition_cycles[-1]
        return None
