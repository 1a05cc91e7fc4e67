"""Smart signal filter.

Decides which retention tier a signal is stored in, comparing it with
the newest stored signal of the vehicle:

1. first signal, ignition change or plug change -> ``critical``
2. moved, SoC/range/odometer changed            -> ``important``
3. heartbeat interval elapsed                  -> ``routine``
4. otherwise                                   -> ``skip``

Any failure while classifying fails open to ``critical``.
"""

from __future__ import annotations

import logging

from fleetstate._constants import (
    HEARTBEAT_SECONDS,
    LOCATION_CHANGE_M,
    ODOMETER_CHANGE_MILES,
    RANGE_CHANGE_MILES,
    SOC_CHANGE_PCT,
)
from fleetstate._geo import haversine_m
from fleetstate.exceptions import StoreError
from fleetstate.models.signal import SignalDecision, SignalTier, TelemetrySignal
from fleetstate.store.base import SignalStore

_logger = logging.getLogger(__name__)


def _changed_by(current: float | None, previous: float | None, threshold: float) -> bool:
    if current is None or previous is None:
        return False
    return abs(current - previous) >= threshold


def classify_against(signal: TelemetrySignal, previous: TelemetrySignal | None) -> SignalDecision:
    """Pure tier decision for *signal* given the last stored one."""
    if previous is None:
        return SignalDecision(tier=SignalTier.CRITICAL, reasons=("first_signal",))

    critical: list[str] = []
    if signal.ignition != previous.ignition:
        critical.append("ignition_change")
    if signal.plugged_in != previous.plugged_in:
        critical.append("plug_change")
    if critical:
        return SignalDecision(tier=SignalTier.CRITICAL, reasons=tuple(critical))

    important: list[str] = []
    moved = haversine_m(previous.latitude, previous.longitude, signal.latitude, signal.longitude)
    if moved > LOCATION_CHANGE_M:
        important.append("location_change")
    if _changed_by(signal.state_of_charge_pct, previous.state_of_charge_pct, SOC_CHANGE_PCT):
        important.append("soc_change")
    if _changed_by(signal.range_miles, previous.range_miles, RANGE_CHANGE_MILES):
        important.append("range_change")
    if _changed_by(signal.odometer_miles, previous.odometer_miles, ODOMETER_CHANGE_MILES):
        important.append("odometer_change")
    if important:
        return SignalDecision(tier=SignalTier.IMPORTANT, reasons=tuple(important))

    elapsed = (signal.provider_timestamp - previous.provider_timestamp).total_seconds()
    if elapsed >= HEARTBEAT_SECONDS:
        return SignalDecision(tier=SignalTier.ROUTINE, reasons=("heartbeat",))

    return SignalDecision(tier=SignalTier.SKIP)


class SmartSignalFilter:
    """Classify and persist incoming signals by retention tier."""

    def __init__(self, store: SignalStore) -> None:
        self._store = store

    async def classify(self, signal: TelemetrySignal) -> SignalDecision:
        try:
            previous = await self._store.latest_signal(signal.vehicle_id)
            return classify_against(signal, previous)
        except Exception:
            _logger.warning(
                "Signal classification failed for %s; storing as critical",
                signal.vehicle_id,
                exc_info=True,
            )
            return SignalDecision(tier=SignalTier.CRITICAL, reasons=("error_fallback",))

    async def store(self, signal: TelemetrySignal, decision: SignalDecision) -> None:
        if not decision.should_store:
            return
        try:
            await self._store.insert_signal(signal, decision)
        except StoreError:
            _logger.error("Could not store %s signal for %s", decision.tier, signal.vehicle_id, exc_info=True)

    async def process(self, signal: TelemetrySignal) -> SignalDecision:
        """Classify *signal* and store it unless skipped."""
        decision = await self.classify(signal)
        _logger.debug(
            "Signal for %s at %s -> %s %s",
            signal.vehicle_id,
            signal.provider_timestamp.isoformat(),
            decision.tier,
            ",".join(decision.reasons),
        )
        await self.store(signal, decision)
        return decision
