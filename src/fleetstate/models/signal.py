"""Telemetry signal model and retention tiers."""

from __future__ import annotations

import enum
from datetime import timedelta

from pydantic import Field, field_validator

from fleetstate._constants import (
    CRITICAL_RETENTION_DAYS,
    IMPORTANT_RETENTION_DAYS,
    KM_TO_MILES,
    ROUTINE_RETENTION_DAYS,
)
from fleetstate.ingestion.normalize import normalize_ignition
from fleetstate.models._base import FleetBaseModel, FleetEnum, GeoPoint, UtcDatetime


class IgnitionStatus(FleetEnum):
    """Ignition position as reported by the provider."""

    OFF = "Off"
    ACCESSORY = "Accessory"
    RUN = "Run"
    ON = "On"
    UNKNOWN = "Unknown"

    @property
    def is_running(self) -> bool:
        return self in (IgnitionStatus.ON, IgnitionStatus.RUN)


class SignalTier(enum.StrEnum):
    """Retention tier chosen by the smart signal filter."""

    CRITICAL = "critical"
    IMPORTANT = "important"
    ROUTINE = "routine"
    SKIP = "skip"

    @property
    def retention(self) -> timedelta | None:
        days = {
            SignalTier.CRITICAL: CRITICAL_RETENTION_DAYS,
            SignalTier.IMPORTANT: IMPORTANT_RETENTION_DAYS,
            SignalTier.ROUTINE: ROUTINE_RETENTION_DAYS,
        }.get(self)
        return timedelta(days=days) if days is not None else None


STORED_TIERS: tuple[SignalTier, ...] = (SignalTier.CRITICAL, SignalTier.IMPORTANT, SignalTier.ROUTINE)


class TelemetrySignal(FleetBaseModel):
    """One normalized telemetry sample for a vehicle.

    Parameters
    ----------
    vehicle_id : str
        Provider vehicle identifier (VIN).
    provider_timestamp : datetime
        When the provider observed the values.
    received_timestamp : datetime
        When the monitor fetched them.
    ignition : IgnitionStatus
        Raw ignition flag.  Unreliable on its own.
    latitude, longitude : float
        GPS fix.
    odometer_miles : float or None
        Odometer reading.
    state_of_charge_pct : float or None
        Battery state of charge in percent.
    plugged_in : bool
        Charger connected.
    battery_range_km : float or None
        Estimated remaining range.
    """

    vehicle_id: str
    provider_timestamp: UtcDatetime
    received_timestamp: UtcDatetime
    ignition: IgnitionStatus = IgnitionStatus.UNKNOWN
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    odometer_miles: float | None = None
    state_of_charge_pct: float | None = None
    plugged_in: bool = False
    battery_range_km: float | None = None

    @field_validator("vehicle_id")
    @classmethod
    def _normalize_vehicle_id(cls, value: str) -> str:
        vehicle_id = value.strip()
        if not vehicle_id:
            raise ValueError("vehicle_id must be non-empty")
        return vehicle_id

    @field_validator("ignition", mode="before")
    @classmethod
    def _coerce_ignition(cls, value: object) -> object:
        if isinstance(value, IgnitionStatus) or value is None:
            return value if value is not None else IgnitionStatus.UNKNOWN
        return normalize_ignition(value)

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)

    @property
    def range_miles(self) -> float | None:
        if self.battery_range_km is None:
            return None
        return self.battery_range_km * KM_TO_MILES


class SignalDecision(FleetBaseModel):
    """Outcome of classifying a signal."""

    tier: SignalTier
    reasons: tuple[str, ...] = ()

    @property
    def should_store(self) -> bool:
        return self.tier is not SignalTier.SKIP
