"""State deriver.

Sole writer of :class:`CanonicalVehicleState`.  Rule order:

1. Plugged in -> ``CHARGING``.
2. GPS stationary -> ``PARKED``, even when ignition reports On/Run.
   Otherwise, with a prior location: moved more than 20 m -> ``TRIP``;
   still at a known site -> ``PARKED``.  Without a prior location a known
   site also means ``PARKED``.  A ``MOVING`` verdict blocks both site rules.
   A vehicle settled in ``PARKED``/``CHARGING`` that has not moved stays
   ``PARKED`` when the ignition comes on (ignition cycle).
3. Ignition On/Run -> ``TRIP``.
4. Otherwise ``PARKED``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fleetstate._constants import MOVEMENT_EVIDENCE_M
from fleetstate._geo import format_coordinates, haversine_m
from fleetstate.engine.gps_parking import GpsAssessment, GpsParkingDetector, GpsVerdict
from fleetstate.exceptions import StoreError
from fleetstate.models.signal import TelemetrySignal
from fleetstate.models.state import (
    CanonicalVehicleState,
    DerivedState,
    Place,
    PlaceSource,
    StateMetrics,
)
from fleetstate.places import PlaceResolver
from fleetstate.store.base import SignalStore

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Derivation:
    """Result of deriving a state for one signal."""

    state: CanonicalVehicleState
    previous: CanonicalVehicleState | None
    reason: str
    gps: GpsAssessment | None = None
    stale: bool = False

    @property
    def transitioned(self) -> bool:
        return not self.stale and (self.previous is None or self.previous.state != self.state.state)


def decide_state(
    signal: TelemetrySignal,
    gps: GpsAssessment,
    previous: CanonicalVehicleState | None,
    *,
    at_site: bool,
    settle_seconds: float = 0.0,
) -> tuple[DerivedState, str]:
    """Apply the derivation rules; returns the state and the rule that fired.

    A vehicle parked for at least *settle_seconds* that reports ignition
    without moving stays parked: an ignition cycle, not a trip.
    """
    if signal.plugged_in:
        return DerivedState.CHARGING, "plugged_in"

    if gps.verdict.is_parked:
        return DerivedState.PARKED, "gps_stationary"

    site_allowed = at_site and gps.verdict is not GpsVerdict.MOVING
    if previous is not None:
        prior = previous.last_known_location
        moved = haversine_m(prior.latitude, prior.longitude, signal.latitude, signal.longitude)
        if moved > MOVEMENT_EVIDENCE_M:
            return DerivedState.TRIP, "movement_evidence"
        if site_allowed:
            return DerivedState.PARKED, "at_site"
        parked_for = (signal.provider_timestamp - previous.state_since).total_seconds()
        if (
            signal.ignition.is_running
            and previous.state in (DerivedState.PARKED, DerivedState.CHARGING)
            and gps.verdict is not GpsVerdict.MOVING
            and parked_for >= settle_seconds
        ):
            return DerivedState.PARKED, "ignition_cycle"
    elif site_allowed:
        return DerivedState.PARKED, "site_cold_start"

    if signal.ignition.is_running:
        return DerivedState.TRIP, "ignition"
    return DerivedState.PARKED, "ignition_off"


class StateDeriver:
    """Derive and persist the canonical state of each vehicle.

    The last state per vehicle is kept in memory so derivation keeps
    working when the store is unavailable.
    """

    def __init__(
        self,
        store: SignalStore,
        detector: GpsParkingDetector,
        places: PlaceResolver,
        *,
        settle_seconds: float = 60.0,
    ) -> None:
        self._store = store
        self._settle = settle_seconds
        self._detector = detector
        self._places = places
        self._states: dict[str, CanonicalVehicleState] = {}

    async def current(self, vehicle_id: str) -> CanonicalVehicleState | None:
        """Last known state, loaded from the store on first use."""
        state = self._states.get(vehicle_id)
        if state is not None:
            return state
        try:
            state = await self._store.get_state(vehicle_id)
        except StoreError:
            _logger.error("Could not load state for %s", vehicle_id, exc_info=True)
            return None
        if state is not None:
            self._states[vehicle_id] = state
        return state

    async def check_stale(self, signal: TelemetrySignal) -> Derivation | None:
        """Stale result when *signal* is not newer than the stored state, else ``None``."""
        previous = await self.current(signal.vehicle_id)
        if previous is None or signal.provider_timestamp > previous.last_signal_timestamp:
            return None
        _logger.debug(
            "Ignoring signal for %s at %s (not newer than %s)",
            signal.vehicle_id,
            signal.provider_timestamp.isoformat(),
            previous.last_signal_timestamp.isoformat(),
        )
        return Derivation(state=previous, previous=previous, reason="stale", stale=True)

    async def derive(self, signal: TelemetrySignal) -> Derivation:
        stale = await self.check_stale(signal)
        if stale is not None:
            return stale
        previous = await self.current(signal.vehicle_id)

        site = self._places.match_site(signal.latitude, signal.longitude)
        gps = await self._detector.detect(
            signal.vehicle_id,
            signal.location,
            at_site=site is not None,
            now=signal.provider_timestamp,
        )
        new_state, reason = decide_state(
            signal,
            gps,
            previous,
            at_site=site is not None,
            settle_seconds=self._settle,
        )

        same_state = previous is not None and previous.state == new_state
        state_since = previous.state_since if previous is not None and same_state else signal.provider_timestamp

        place = previous.last_known_place if previous is not None else None
        if not same_state or place is None:
            place = await self._resolve_place(signal, new_state, fallback=place)

        range_miles = signal.range_miles
        freshness = signal.received_timestamp - signal.provider_timestamp
        state = CanonicalVehicleState(
            vehicle_id=signal.vehicle_id,
            state=new_state,
            state_since=state_since,
            last_signal_timestamp=signal.provider_timestamp,
            freshness_ms=max(0, int(freshness.total_seconds() * 1000)),
            last_known_location=signal.location,
            last_known_place=place,
            metrics=StateMetrics(
                soc=signal.state_of_charge_pct,
                odometer=signal.odometer_miles,
                range_miles=round(range_miles) if range_miles is not None else None,
            ),
        )

        if not same_state:
            _logger.info(
                "%s: %s -> %s (%s, gps=%s) at %s",
                signal.vehicle_id,
                previous.state if previous is not None else "-",
                new_state,
                reason,
                gps.verdict,
                place.display_name,
            )
        return Derivation(state=state, previous=previous, reason=reason, gps=gps)

    async def _resolve_place(self, signal: TelemetrySignal, state: DerivedState, *, fallback: Place | None) -> Place:
        try:
            return await self._places.resolve(signal.latitude, signal.longitude, state)
        except Exception:
            _logger.warning("Place resolution failed for %s", signal.vehicle_id, exc_info=True)
        if fallback is not None:
            return fallback
        return Place(
            display_name=format_coordinates(signal.latitude, signal.longitude),
            source_kind=PlaceSource.COORDINATES,
        )

    async def save(self, state: CanonicalVehicleState) -> None:
        """Record *state* in memory and persist it."""
        self._states[state.vehicle_id] = state
        try:
            await self._store.save_state(state)
        except StoreError:
            _logger.error("Could not persist state for %s; kept in memory", state.vehicle_id, exc_info=True)
