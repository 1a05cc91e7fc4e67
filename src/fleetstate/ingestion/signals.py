"""Turn provider status snapshots into telemetry signals."""

from __future__ import annotations

import logging
from datetime import datetime

from fleetstate.models.provider import ProviderSignal
from fleetstate.models.signal import TelemetrySignal

_logger = logging.getLogger(__name__)


def build_signal(provider_signal: ProviderSignal, *, received_at: datetime) -> TelemetrySignal | None:
    """Build a :class:`TelemetrySignal`, or ``None`` when the snapshot has no position.

    The provider timestamp falls back to *received_at* when no signal
    carried one.  A missing plug status reads as unplugged.
    """
    if provider_signal.position is None:
        _logger.warning("No position in provider data for %s; skipping tick", provider_signal.vehicle_id)
        return None
    provider_ts = provider_signal.timestamp or received_at
    return TelemetrySignal(
        vehicle_id=provider_signal.vehicle_id,
        provider_timestamp=provider_ts,
        received_timestamp=max(received_at, provider_ts),
        ignition=provider_signal.ignition,
        latitude=provider_signal.position.latitude,
        longitude=provider_signal.position.longitude,
        odometer_miles=provider_signal.odometer_miles,
        state_of_charge_pct=provider_signal.state_of_charge_pct,
        plugged_in=bool(provider_signal.plugged_in),
        battery_range_km=provider_signal.battery_range_km,
    )
