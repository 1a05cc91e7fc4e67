"""Parking session tracker.

A parking session is confirmed one grace period after the vehicle stops,
recording both the ignition-off time and the confirmed parking start.
Ignition cycles that happen while the vehicle stays put are attached to
the open session.  The session ends once the vehicle has moved more than
half a mile from where it parked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from fleetstate._constants import PARKING_DEPARTURE_M
from fleetstate._geo import format_coordinates, haversine_m
from fleetstate.engine.deriver import Derivation
from fleetstate.engine.timers import GraceTimers
from fleetstate.engine.tracking import TrackingArena
from fleetstate.events import EventBus
from fleetstate.exceptions import StoreError
from fleetstate.models._base import GeoPoint
from fleetstate.models.events import FleetEvent, FleetEventType
from fleetstate.models.parking import IgnitionCycle, ParkingSession
from fleetstate.models.signal import IgnitionStatus, TelemetrySignal
from fleetstate.models.state import DerivedState, PlaceSource
from fleetstate.models.trip import TripLocation
from fleetstate.places import PlaceResolver
from fleetstate.store.base import SignalStore

_logger = logging.getLogger(__name__)

_TIMER_KIND = "parking"


@dataclass(frozen=True)
class PendingParking:
    off_time: datetime
    location: GeoPoint


class ParkingSessionTracker:
    """Open, extend and close parking sessions per vehicle."""

    def __init__(
        self,
        store: SignalStore,
        places: PlaceResolver,
        events: EventBus,
        timers: GraceTimers,
        arena: TrackingArena,
        grace_seconds: float,
    ) -> None:
        self._store = store
        self._places = places
        self._events = events
        self._timers = timers
        self._arena = arena
        self._grace = grace_seconds
        self._sessions: dict[str, ParkingSession] = {}
        self._pending: dict[str, PendingParking] = {}

    async def load(self) -> int:
        """Rehydrate open sessions from the store."""
        try:
            sessions = await self._store.list_open_parking_sessions()
        except StoreError:
            _logger.error("Could not load open parking sessions", exc_info=True)
            return 0
        for session in sessions:
            self._sessions[session.vehicle_id] = session
        _logger.info("Rehydrated %d open parking sessions", len(sessions))
        return len(sessions)

    def open_session(self, vehicle_id: str) -> ParkingSession | None:
        return self._sessions.get(vehicle_id)

    def pending(self, vehicle_id: str) -> PendingParking | None:
        return self._pending.get(vehicle_id)

    async def handle(
        self,
        signal: TelemetrySignal,
        derivation: Derivation,
        previous_ignition: IgnitionStatus | None,
    ) -> None:
        vehicle_id = signal.vehicle_id
        state = derivation.state

        pending = self._pending.get(vehicle_id)
        if pending is not None and signal.provider_timestamp >= pending.off_time + timedelta(seconds=self._grace):
            await self.confirm(vehicle_id)

        session = self._sessions.get(vehicle_id)
        if session is not None:
            if await self._check_departure(signal, session):
                return
            await self._track_ignition_cycle(signal, session, previous_ignition)
            return

        if state.state is DerivedState.TRIP:
            if self._pending.pop(vehicle_id, None) is not None:
                self._timers.cancel((_TIMER_KIND, vehicle_id))
                _logger.debug("%s moving again before parking was confirmed", vehicle_id)
            return

        if vehicle_id in self._pending:
            return
        self._begin(vehicle_id, PendingParking(off_time=state.state_since, location=signal.location))
        if self._grace <= 0:
            await self.confirm(vehicle_id)

    def _begin(self, vehicle_id: str, pending: PendingParking) -> None:
        self._pending[vehicle_id] = pending
        if self._grace <= 0:
            return

        async def _on_timer() -> None:
            async with self._arena.lock(vehicle_id):
                await self.confirm(vehicle_id, expected=pending)

        self._timers.schedule((_TIMER_KIND, vehicle_id), self._grace, _on_timer)

    async def confirm(self, vehicle_id: str, *, expected: PendingParking | None = None) -> ParkingSession | None:
        """Open a session for the pending stop of *vehicle_id*."""
        pending = self._pending.get(vehicle_id)
        if pending is None or (expected is not None and pending is not expected):
            return None
        del self._pending[vehicle_id]
        self._timers.cancel((_TIMER_KIND, vehicle_id))

        session = ParkingSession(
            vehicle_id=vehicle_id,
            ignition_off_time=pending.off_time,
            parking_start_time=pending.off_time + timedelta(seconds=self._grace),
            location=await self._location(pending.location),
        )
        self._sessions[vehicle_id] = session
        try:
            await self._store.insert_parking_session(session)
        except StoreError:
            _logger.error("Could not persist parking session for %s", vehicle_id, exc_info=True)

        _logger.info(
            "%s parked at %s since %s",
            vehicle_id,
            session.location.address,
            session.ignition_off_time.isoformat(),
        )
        await self._events.publish(
            FleetEvent(
                type=FleetEventType.PARKING_CONFIRMED,
                vehicle_id=vehicle_id,
                timestamp=session.parking_start_time,
                location=pending.location,
                metrics={
                    "ignitionOffTime": session.ignition_off_time.isoformat(),
                    "parkingStartTime": session.parking_start_time.isoformat(),
                    "address": session.location.address,
                },
            )
        )
        return session

    async def _location(self, point: GeoPoint) -> TripLocation:
        try:
            place = await self._places.resolve(point.latitude, point.longitude, DerivedState.PARKED)
        except Exception:
            _logger.warning("Place resolution failed for %s", format_coordinates(point.latitude, point.longitude))
            return TripLocation(
                latitude=point.latitude,
                longitude=point.longitude,
                address=format_coordinates(point.latitude, point.longitude),
                place_source=PlaceSource.COORDINATES,
            )
        return TripLocation(
            latitude=point.latitude,
            longitude=point.longitude,
            address=place.display_name,
            place_source=place.source_kind,
        )

    async def _check_departure(self, signal: TelemetrySignal, session: ParkingSession) -> bool:
        moved = haversine_m(
            session.location.latitude,
            session.location.longitude,
            signal.latitude,
            signal.longitude,
        )
        if moved <= PARKING_DEPARTURE_M:
            return False

        end = signal.provider_timestamp
        cycles = session.ignition_cycles
        open_cycle = session.open_cycle
        if open_cycle is not None:
            cycles = (*cycles[:-1], self._close_cycle(open_cycle, end))
        closed = session.model_copy(
            update={
                "parking_end_time": end,
                "is_currently_parked": False,
                "ignition_cycles": cycles,
                "total_parking_minutes": max(0.0, (end - session.parking_start_time).total_seconds() / 60),
            }
        )
        del self._sessions[signal.vehicle_id]
        await self._save(closed)
        _logger.info(
            "%s left %s after %.0f min (%d ignition cycles)",
            signal.vehicle_id,
            session.location.address,
            closed.total_parking_minutes or 0.0,
            len(cycles),
        )
        return True

    async def _track_ignition_cycle(
        self,
        signal: TelemetrySignal,
        session: ParkingSession,
        previous: IgnitionStatus | None,
    ) -> None:
        if previous is None or previous.is_running == signal.ignition.is_running:
            return
        open_cycle = session.open_cycle
        if signal.ignition.is_running:
            if open_cycle is not None:
                return
            cycle = IgnitionCycle(
                cycle_number=len(session.ignition_cycles) + 1,
                ignition_on_time=signal.provider_timestamp,
            )
            cycles = (*session.ignition_cycles, cycle)
            _logger.debug("%s ignition cycle %d opened while parked", signal.vehicle_id, cycle.cycle_number)
        else:
            if open_cycle is None:
                return
            cycles = (*session.ignition_cycles[:-1], self._close_cycle(open_cycle, signal.provider_timestamp))
        updated = session.model_copy(update={"ignition_cycles": cycles})
        self._sessions[signal.vehicle_id] = updated
        await self._save(updated)

    @staticmethod
    def _close_cycle(cycle: IgnitionCycle, off_time: datetime) -> IgnitionCycle:
        minutes = max(0.0, (off_time - cycle.ignition_on_time).total_seconds() / 60)
        return cycle.model_copy(update={"ignition_off_time": off_time, "duration_minutes": minutes})

    async def _save(self, session: ParkingSession) -> None:
        try:
            await self._store.update_parking_session(session)
        except StoreError:
            _logger.error("Could not update parking session %s", session.id, exc_info=True)
