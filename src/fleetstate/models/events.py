"""Outbound fleet events."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field

from fleetstate.models._base import FleetBaseModel, GeoPoint, UtcDatetime


class FleetEventType(enum.StrEnum):
    TRIP_STARTED = "trip_started"
    TRIP_ENDED = "trip_ended"
    IGNITION_ON = "ignition_on"
    IGNITION_OFF = "ignition_off"
    PARKING_CONFIRMED = "parking_confirmed"


class FleetEvent(FleetBaseModel):
    """Notification emitted to subscribers of the event bus."""

    type: FleetEventType
    vehicle_id: str
    timestamp: UtcDatetime
    location: GeoPoint | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)
    trip_id: str | None = None
