"""Base model and enum for fleetstate records.

Every persisted model inherits from :class:`FleetBaseModel` which
provides:

* ``alias_generator=to_camel`` so stored documents use camelCase keys
  while Python code uses snake_case fields.
* :meth:`FleetBaseModel.to_document` producing a store-ready dict
  (camelCase keys, enum values, lists instead of tuples).

Enums that mirror provider vocabularies inherit from :class:`FleetEnum`
which resolves unmapped values case-insensitively and otherwise falls
back to ``UNKNOWN``.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fleetstate.ingestion.normalize import parse_timestamp, safe_float


def _coerce_utc(value: Any) -> Any:
    if value is None:
        return value
    parsed = parse_timestamp(value)
    return parsed if parsed is not None else value


UtcDatetime = Annotated[datetime, BeforeValidator(_coerce_utc)]
"""Aware UTC datetime; accepts ISO strings, epoch seconds/ms and naive datetimes."""


class FleetEnum(enum.StrEnum):
    """Base for string enums with an ``UNKNOWN`` member."""

    @classmethod
    def _missing_(cls, value: object) -> FleetEnum:
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value.lower() == lowered:
                    return member
        unknown: FleetEnum = cls.UNKNOWN  # type: ignore[attr-defined]
        return unknown


def _bson_ready(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _bson_ready(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_bson_ready(item) for item in value]
    return value


class FleetBaseModel(BaseModel):
    """Base for fleetstate records."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_document(self) -> dict[str, Any]:
        """Dump with camelCase keys, keeping datetimes native for the store."""
        document: dict[str, Any] = _bson_ready(self.model_dump(by_alias=True))
        return document


class GeoPoint(FleetBaseModel):
    """A WGS84 position."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    @classmethod
    def from_raw(cls, value: Any) -> GeoPoint | None:
        """Build from a ``{latitude, longitude}``/``{lat, lon}`` mapping; ``None`` when incomplete."""
        if isinstance(value, GeoPoint):
            return value
        if not isinstance(value, dict):
            return None
        lat = safe_float(value.get("latitude", value.get("lat")))
        lon = safe_float(value.get("longitude", value.get("lon", value.get("lng"))))
        if lat is None or lon is None:
            return None
        return cls(latitude=lat, longitude=lon)
