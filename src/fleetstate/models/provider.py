"""Telemetry provider response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from fleetstate._constants import KM_TO_MILES, METERS_PER_MILE
from fleetstate.ingestion.normalize import (
    newest_timestamp,
    normalize_ignition,
    normalize_plug_status,
    parse_timestamp,
    safe_float,
    safe_int,
    safe_str,
)
from fleetstate.models._base import GeoPoint
from fleetstate.models.signal import IgnitionStatus


def _signal_map(payload: Any) -> dict[str, dict[str, Any]]:
    """Flatten a ``signals`` block to ``{name: {value, timestamp}}``.

    The provider sends either an object keyed by signal name or an array
    of snapshots; for arrays the first snapshot wins.
    """
    signals = payload.get("signals") if isinstance(payload, dict) else None
    if isinstance(signals, list):
        signals = next((item for item in signals if isinstance(item, dict)), {})
    if not isinstance(signals, dict):
        return {}
    result: dict[str, dict[str, Any]] = {}
    for name, entry in signals.items():
        if isinstance(entry, dict):
            result[name] = entry
        else:
            result[name] = {"value": entry}
    return result


class ProviderVehicle(BaseModel):
    """An enrolled vehicle."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    vin: str
    name: str | None = Field(default=None, validation_alias=AliasChoices("vehicle_name", "vehicleName", "name"))
    make: str | None = None
    model: str | None = None
    year: int | None = None

    @field_validator("name", "make", "model", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("year", mode="before")
    @classmethod
    def _coerce_year(cls, value: Any) -> int | None:
        return safe_int(value)


class ProviderSignal(BaseModel):
    """Normalized vehicle status from the provider.

    Numeric fields are ``None`` when the signal is absent or unparseable.

    Parameters
    ----------
    vehicle_id : str
        VIN the status belongs to.
    timestamp : datetime or None
        Newest timestamp among the returned signals.
    position : GeoPoint or None
        GPS fix; the tick is skipped without one.
    ignition : IgnitionStatus
        Normalized ignition position.
    odometer_miles : float or None
        Odometer, converted from kilometres.
    state_of_charge_pct : float or None
        High-voltage battery state of charge.
    battery_range_km : float or None
        Remaining range as reported (kilometres).
    plugged_in : bool or None
        Charger plug connected.
    raw : dict
        Full API response dict.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    vehicle_id: str
    timestamp: datetime | None = None
    position: GeoPoint | None = None
    ignition: IgnitionStatus = IgnitionStatus.UNKNOWN
    odometer_miles: float | None = None
    state_of_charge_pct: float | None = None
    battery_range_km: float | None = None
    plugged_in: bool | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, vehicle_id: str, payload: dict[str, Any]) -> ProviderSignal:
        signals = _signal_map(payload)

        def value(name: str) -> Any:
            return signals.get(name, {}).get("value")

        odometer_km = safe_float(value("odometer"))
        return cls(
            vehicle_id=vehicle_id,
            timestamp=newest_timestamp(entry.get("timestamp") for entry in signals.values()),
            position=GeoPoint.from_raw(value("position")),
            ignition=IgnitionStatus(normalize_ignition(value("ignition_status"))),
            odometer_miles=odometer_km / (METERS_PER_MILE / 1000) if odometer_km is not None else None,
            state_of_charge_pct=safe_float(value("xev_battery_state_of_charge")),
            battery_range_km=safe_float(value("xev_battery_range")),
            plugged_in=normalize_plug_status(value("xev_plug_charger_status")),
            raw=payload if isinstance(payload, dict) else {},
        )


class ProviderTrip(BaseModel):
    """A trip summary from the trip-distance authority."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    trip_start_time: datetime = Field(validation_alias=AliasChoices("tripStartTime", "trip_start_time"))
    trip_end_time: datetime | None = Field(default=None, validation_alias=AliasChoices("tripEndTime", "trip_end_time"))
    distance_km: float | None = Field(
        default=None,
        validation_alias=AliasChoices("tripDistance", "distance_km", "distanceKm"),
    )
    start_position: GeoPoint | None = Field(
        default=None, validation_alias=AliasChoices("startPosition", "start_position")
    )
    end_position: GeoPoint | None = Field(default=None, validation_alias=AliasChoices("endPosition", "end_position"))
    start_odometer: float | None = Field(
        default=None, validation_alias=AliasChoices("startOdometer", "start_odometer")
    )
    end_odometer: float | None = Field(default=None, validation_alias=AliasChoices("endOdometer", "end_odometer"))

    @model_validator(mode="before")
    @classmethod
    def _coerce_positions(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        merged = dict(values)
        for key in ("startPosition", "endPosition", "start_position", "end_position"):
            if key in merged:
                merged[key] = GeoPoint.from_raw(merged[key])
        return merged

    @field_validator("trip_start_time", "trip_end_time", mode="before")
    @classmethod
    def _coerce_timestamps(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("distance_km", "start_odometer", "end_odometer", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)

    @property
    def distance_miles(self) -> float | None:
        if self.distance_km is None:
            return None
        return self.distance_km * KM_TO_MILES
