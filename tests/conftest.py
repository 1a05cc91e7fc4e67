from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pytest

from fleetstate.exceptions import ProviderUnavailable
from fleetstate.models.provider import ProviderSignal, ProviderVehicle
from fleetstate.models.signal import TelemetrySignal
from fleetstate.store.memory import InMemorySignalStore

VIN = "1FTVW1EL0NWG00001"
DEPOT = (30.26720, -97.74310)

_EARTH_RADIUS_M = 6_371_000.0


def shift(lat: float, lon: float, north_m: float = 0.0, east_m: float = 0.0) -> tuple[float, float]:
    """Move a point by a number of metres north and east."""
    dlat = math.degrees(north_m / _EARTH_RADIUS_M)
    dlon = math.degrees(east_m / (_EARTH_RADIUS_M * math.cos(math.radians(lat))))
    return lat + dlat, lon + dlon


@pytest.fixture
def t0() -> datetime:
    # 09:00 in America/Chicago, inside business hours.
    return datetime(2026, 3, 3, 15, 0, tzinfo=UTC)


@pytest.fixture
def store() -> InMemorySignalStore:
    return InMemorySignalStore()


@pytest.fixture
def make_signal(t0: datetime) -> Callable[..., TelemetrySignal]:
    def _make(
        at: datetime | None = None,
        position: tuple[float, float] = DEPOT,
        ignition: str = "Off",
        **overrides: Any,
    ) -> TelemetrySignal:
        ts = at or t0
        fields: dict[str, Any] = {
            "vehicle_id": VIN,
            "provider_timestamp": ts,
            "received_timestamp": ts,
            "ignition": ignition,
            "latitude": position[0],
            "longitude": position[1],
            "odometer_miles": 12_000.0,
            "state_of_charge_pct": 80.0,
            "battery_range_km": 300.0,
        }
        fields.update(overrides)
        return TelemetrySignal(**fields)

    return _make


@dataclass
class FakeProvider:
    """Provider double; ``payloads`` maps VINs to status bodies, missing VINs fail."""

    vins: tuple[str, ...] = (VIN,)
    payloads: dict[str, dict[str, Any]] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    async def list_vehicles(self) -> list[ProviderVehicle]:
        return [ProviderVehicle(vin=vin) for vin in self.vins]

    async def get_signal(self, vehicle_id: str, signal_filter: Sequence[str] = ()) -> ProviderSignal:
        self.calls.append(vehicle_id)
        payload = self.payloads.get(vehicle_id)
        if payload is None:
            raise ProviderUnavailable("offline", vehicle_id=vehicle_id)
        return ProviderSignal.from_api(vehicle_id, payload)
