"""Trip lifecycle manager.

Sole writer of trips and route points.  Trips start when the derived
state enters ``TRIP`` and end one grace period after it leaves, unless
movement resumes first.  The grace period is confirmed either by a timer
or, earlier, by the signal clock when a later sample is already past it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from fleetstate._constants import (
    GEOFENCE_DEPARTURE_OFFSET_SECONDS,
    GPS_SEGMENT_MIN_M,
    METERS_PER_MILE,
    MOVING_THRESHOLD_M,
    PROVIDER_TRIP_MATCH_SECONDS,
    ROUTE_POINT_MIN_DISTANCE_M,
    ROUTE_POINT_MIN_INTERVAL_SECONDS,
    SHORT_TRIP_SECONDS,
    SPEED_MIN_ELAPSED_SECONDS,
)
from fleetstate._geo import format_coordinates, haversine_m, point_towards
from fleetstate.config import FleetConfig
from fleetstate.engine.deriver import Derivation
from fleetstate.engine.timers import GraceTimers
from fleetstate.engine.tracking import TrackingArena
from fleetstate.events import EventBus
from fleetstate.exceptions import ActiveTripExistsError, ProviderError, StoreError
from fleetstate.ingestion.provider import TripDistanceAuthority
from fleetstate.models._base import GeoPoint
from fleetstate.models.events import FleetEvent, FleetEventType
from fleetstate.models.provider import ProviderTrip
from fleetstate.models.signal import IgnitionStatus, TelemetrySignal
from fleetstate.models.state import DerivedState, PlaceSource
from fleetstate.models.tracking import VehicleTracking
from fleetstate.models.trip import DataSource, DistanceSource, RoutePoint, Trip, TripLocation
from fleetstate.places import PlaceResolver
from fleetstate.store.base import SignalStore

_logger = logging.getLogger(__name__)

_TIMER_KIND = "trip_end"


@dataclass(frozen=True)
class PendingTripEnd:
    """A trip waiting out its grace period before being closed."""

    trip_id: str
    off_time: datetime
    location: GeoPoint
    odometer: float | None = None
    battery_pct: float | None = None


def match_provider_trip(candidates: list[ProviderTrip], started_at: datetime) -> ProviderTrip | None:
    """Provider trip starting closest to *started_at*, within the match window."""
    window = PROVIDER_TRIP_MATCH_SECONDS
    best: tuple[float, ProviderTrip] | None = None
    for candidate in candidates:
        offset = abs((candidate.trip_start_time - started_at).total_seconds())
        if offset <= window and (best is None or offset < best[0]):
            best = (offset, candidate)
    return best[1] if best is not None else None


def gps_distance_miles(points: list[RoutePoint]) -> float:
    """Sum of consecutive route-point segments, ignoring jitter below 15 m."""
    total = 0.0
    for a, b in zip(points, points[1:], strict=False):
        segment = haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
        if segment >= GPS_SEGMENT_MIN_M:
            total += segment
    return total / METERS_PER_MILE


class TripLifecycleManager:
    """Start, extend and close trips from derived state transitions."""

    def __init__(
        self,
        store: SignalStore,
        places: PlaceResolver,
        events: EventBus,
        timers: GraceTimers,
        arena: TrackingArena,
        config: FleetConfig,
        *,
        distance_authority: TripDistanceAuthority | None = None,
    ) -> None:
        self._store = store
        self._places = places
        self._events = events
        self._timers = timers
        self._arena = arena
        self._authority = distance_authority
        self._grace = config.parking_grace_seconds
        self._keep_last = config.route_history_limit
        self._home = config.home_base
        self._tz = ZoneInfo(config.time_zone)
        self._pending: dict[str, PendingTripEnd] = {}
        self._departures: dict[str, RoutePoint] = {}

    def pending_end(self, vehicle_id: str) -> PendingTripEnd | None:
        return self._pending.get(vehicle_id)

    # ------------------------------------------------------------------
    # Per-signal entry points
    # ------------------------------------------------------------------

    async def check_geofence(self, signal: TelemetrySignal) -> RoutePoint | None:
        """Synthesize a departure route point when the vehicle leaves the home geofence.

        Runs before state derivation so the detector sees the departure.
        """
        if self._home is None:
            return None
        tracking = self._arena.get(signal.vehicle_id)
        distance = haversine_m(self._home.latitude, self._home.longitude, signal.latitude, signal.longitude)
        inside = distance <= self._home.radius_m
        was_inside = tracking.inside_home_geofence
        tracking.inside_home_geofence = inside
        if was_inside is not True or inside:
            return None

        lat, lon = point_towards(
            self._home.latitude,
            self._home.longitude,
            signal.latitude,
            signal.longitude,
            self._home.radius_m,
        )
        marker = RoutePoint(
            vehicle_id=signal.vehicle_id,
            timestamp=signal.provider_timestamp - timedelta(seconds=GEOFENCE_DEPARTURE_OFFSET_SECONDS),
            latitude=lat,
            longitude=lon,
            battery_level=signal.state_of_charge_pct,
            ignition_status=IgnitionStatus.ON,
            is_moving=True,
            data_source=DataSource.GEOFENCE_DEPARTURE,
        )
        _logger.info(
            "%s left %s (%.0f m from centre); departure point at %s",
            signal.vehicle_id,
            self._home.name,
            distance,
            format_coordinates(lat, lon),
        )
        await self._store_point(marker, tracking)
        if tracking.active_trip_id is None:
            self._departures[signal.vehicle_id] = marker
        return marker

    async def handle(self, signal: TelemetrySignal, derivation: Derivation) -> Trip | None:
        """Apply one derived state to the trip lifecycle.

        Returns the trip started by this signal, if any.
        """
        vehicle_id = signal.vehicle_id
        tracking = self._arena.get(vehicle_id)
        state = derivation.state.state
        started: Trip | None = None

        pending = self._pending.get(vehicle_id)
        if pending is not None and signal.provider_timestamp >= pending.off_time + timedelta(seconds=self._grace):
            await self.finalize(vehicle_id)
            pending = None

        if state is DerivedState.TRIP:
            if pending is not None:
                self._cancel_pending_end(vehicle_id, signal)
            if tracking.active_trip_id is None:
                started = await self.start_trip(signal, tracking)
        elif tracking.active_trip_id is not None and pending is None:
            await self._begin_end(signal, tracking)

        await self._maybe_record_route_point(signal, state, tracking)
        await self._emit_ignition_change(signal, tracking)
        self._departures.pop(vehicle_id, None)
        return started

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_trip(self, signal: TelemetrySignal, tracking: VehicleTracking) -> Trip | None:
        vehicle_id = signal.vehicle_id
        existing = await self._active_trip(vehicle_id)
        if existing is not None:
            _logger.info("%s already has active trip %s; continuing it", vehicle_id, existing.id)
            tracking.active_trip_id = existing.id
            return None

        departure = self._departures.pop(vehicle_id, None)
        started_at = departure.timestamp if departure is not None else signal.provider_timestamp
        start_point = departure.location if departure is not None else signal.location
        trip = Trip(
            vehicle_id=vehicle_id,
            ignition_on_time=started_at,
            start_location=await self._start_location(vehicle_id, start_point, started_at),
            start_odometer=signal.odometer_miles,
            start_battery_pct=signal.state_of_charge_pct,
            route_points=(departure,) if departure is not None else (),
            last_updated=signal.provider_timestamp,
        )
        try:
            await self._store.insert_trip(trip)
        except ActiveTripExistsError as exc:
            existing = await self._active_trip(vehicle_id)
            tracking.active_trip_id = existing.id if existing is not None else exc.existing_trip_id
            _logger.info("%s: concurrent trip start coalesced into %s", vehicle_id, tracking.active_trip_id)
            return None
        except StoreError:
            _logger.error("Could not persist new trip for %s", vehicle_id, exc_info=True)

        tracking.active_trip_id = trip.id
        _logger.info(
            "%s: trip %s started at %s from %s",
            vehicle_id,
            trip.id,
            started_at.isoformat(),
            trip.start_location.address,
        )
        await self._events.publish(
            FleetEvent(
                type=FleetEventType.TRIP_STARTED,
                vehicle_id=vehicle_id,
                timestamp=started_at,
                location=start_point,
                trip_id=trip.id,
                metrics={
                    "startLocation": trip.start_location.address,
                    "odometerMiles": trip.start_odometer,
                    "batteryPct": trip.start_battery_pct,
                },
            )
        )
        return trip

    async def _active_trip(self, vehicle_id: str) -> Trip | None:
        try:
            return await self._store.get_active_trip(vehicle_id)
        except StoreError:
            _logger.error("Could not check active trip for %s", vehicle_id, exc_info=True)
            return None

    async def _start_location(self, vehicle_id: str, point: GeoPoint, started_at: datetime) -> TripLocation:
        """Prefer where today's previous trip ended; otherwise resolve the place."""
        local_midnight = started_at.astimezone(self._tz).replace(hour=0, minute=0, second=0, microsecond=0)
        try:
            previous = await self._store.latest_closed_trip(vehicle_id, local_midnight)
        except StoreError:
            _logger.warning("Could not look up previous trip for %s", vehicle_id, exc_info=True)
            previous = None
        if previous is not None and previous.end_location is not None:
            return previous.end_location
        return await self._resolve_location(point, DerivedState.TRIP)

    async def _resolve_location(self, point: GeoPoint, state: DerivedState) -> TripLocation:
        try:
            place = await self._places.resolve(point.latitude, point.longitude, state)
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

    # ------------------------------------------------------------------
    # End
    # ------------------------------------------------------------------

    async def _begin_end(self, signal: TelemetrySignal, tracking: VehicleTracking) -> None:
        vehicle_id = signal.vehicle_id
        assert tracking.active_trip_id is not None  # noqa: S101
        pending = PendingTripEnd(
            trip_id=tracking.active_trip_id,
            off_time=signal.provider_timestamp,
            location=signal.location,
            odometer=signal.odometer_miles,
            battery_pct=signal.state_of_charge_pct,
        )
        self._pending[vehicle_id] = pending
        if self._grace <= 0:
            await self.finalize(vehicle_id)
            return

        async def _on_timer() -> None:
            async with self._arena.lock(vehicle_id):
                await self.finalize(vehicle_id, expected=pending)

        self._timers.schedule((_TIMER_KIND, vehicle_id), self._grace, _on_timer)
        _logger.info(
            "%s: trip %s pending end at %s (grace %.0fs)",
            vehicle_id,
            pending.trip_id,
            pending.off_time.isoformat(),
            self._grace,
        )

    def _cancel_pending_end(self, vehicle_id: str, signal: TelemetrySignal) -> None:
        pending = self._pending.pop(vehicle_id, None)
        self._timers.cancel((_TIMER_KIND, vehicle_id))
        if pending is not None:
            _logger.info(
                "%s: movement resumed at %s; trip %s continues",
                vehicle_id,
                signal.provider_timestamp.isoformat(),
                pending.trip_id,
            )

    async def finalize(self, vehicle_id: str, *, expected: PendingTripEnd | None = None) -> Trip | None:
        """Close the pending trip of *vehicle_id*, if any."""
        pending = self._pending.get(vehicle_id)
        if pending is None or (expected is not None and pending is not expected):
            return None
        del self._pending[vehicle_id]
        self._timers.cancel((_TIMER_KIND, vehicle_id))
        return await self.end_trip(vehicle_id, pending)

    async def end_trip(self, vehicle_id: str, pending: PendingTripEnd) -> Trip | None:
        tracking = self._arena.get(vehicle_id)
        try:
            trip = await self._store.get_trip(pending.trip_id)
        except StoreError:
            _logger.error("Could not load trip %s for %s", pending.trip_id, vehicle_id, exc_info=True)
            trip = None
        if trip is None or not trip.is_active:
            if tracking.active_trip_id == pending.trip_id:
                tracking.active_trip_id = None
            return None

        distance, source = await self._resolve_distance(trip, pending.off_time)
        duration_s = max(0.0, (pending.off_time - trip.ignition_on_time).total_seconds())
        battery_used = None
        if trip.start_battery_pct is not None and pending.battery_pct is not None:
            battery_used = trip.start_battery_pct - pending.battery_pct

        closed = trip.model_copy(
            update={
                "ignition_off_time": pending.off_time,
                "is_active": False,
                "end_location": await self._resolve_location(pending.location, DerivedState.PARKED),
                "end_odometer": pending.odometer,
                "end_battery_pct": pending.battery_pct,
                "distance_miles": distance,
                "distance_source": source,
                "battery_used_pct": battery_used,
                "total_run_time_minutes": duration_s / 60,
                "last_updated": pending.off_time,
            }
        )
        try:
            await self._store.update_trip(closed)
        except StoreError:
            _logger.error("Could not persist end of trip %s for %s", trip.id, vehicle_id, exc_info=True)

        if tracking.active_trip_id == trip.id:
            tracking.active_trip_id = None
        await self._arena.flush(vehicle_id)

        short_trip = duration_s < SHORT_TRIP_SECONDS
        _logger.info(
            "%s: trip %s ended at %s (%.1f min, %s mi via %s%s)",
            vehicle_id,
            trip.id,
            pending.off_time.isoformat(),
            duration_s / 60,
            f"{distance:.2f}" if distance is not None else "?",
            source,
            ", short" if short_trip else "",
        )
        await self._events.publish(
            FleetEvent(
                type=FleetEventType.TRIP_ENDED,
                vehicle_id=vehicle_id,
                timestamp=pending.off_time,
                location=pending.location,
                trip_id=trip.id,
                metrics={
                    "distanceMiles": distance,
                    "distanceSource": source.value if source is not None else None,
                    "durationMinutes": duration_s / 60,
                    "batteryUsedPct": battery_used,
                    "endLocation": closed.end_location.address if closed.end_location else None,
                    "shortTrip": short_trip,
                },
            )
        )
        return closed

    async def _resolve_distance(self, trip: Trip, off_time: datetime) -> tuple[float | None, DistanceSource | None]:
        """Provider distance when a matching provider trip exists, else GPS."""
        gps_miles = await self._gps_distance(trip, off_time)
        if self._authority is None:
            return gps_miles, DistanceSource.GPS

        window = timedelta(seconds=PROVIDER_TRIP_MATCH_SECONDS)
        try:
            candidates = await self._authority.get_trips_in_range(
                trip.vehicle_id,
                trip.ignition_on_time - window,
                off_time + window,
            )
        except ProviderError:
            _logger.warning("Trip distance lookup failed for %s; using GPS", trip.vehicle_id, exc_info=True)
            return gps_miles, DistanceSource.GPS

        match = match_provider_trip(candidates, trip.ignition_on_time)
        if match is None or match.distance_miles is None:
            _logger.info("No provider trip matched %s for %s; using GPS distance", trip.id, trip.vehicle_id)
            return gps_miles, DistanceSource.GPS

        provider_miles = match.distance_miles
        if abs(provider_miles - gps_miles) > 0.01:
            _logger.info(
                "%s trip %s distance: provider %.2f mi, GPS %.2f mi (%+.2f); using provider",
                trip.vehicle_id,
                trip.id,
                provider_miles,
                gps_miles,
                provider_miles - gps_miles,
            )
        return provider_miles, DistanceSource.PROVIDER

    async def _gps_distance(self, trip: Trip, off_time: datetime) -> float:
        try:
            points = await self._store.route_points_between(trip.vehicle_id, trip.ignition_on_time, off_time)
        except StoreError:
            _logger.warning("Could not load route points for trip %s; using embedded history", trip.id)
            points = list(trip.route_points)
        return gps_distance_miles(points)

    # ------------------------------------------------------------------
    # Route points
    # ------------------------------------------------------------------

    async def _maybe_record_route_point(
        self,
        signal: TelemetrySignal,
        state: DerivedState,
        tracking: VehicleTracking,
    ) -> RoutePoint | None:
        ignition_changed = tracking.last_ignition is not None and tracking.last_ignition != signal.ignition
        first = tracking.last_route_point_at is None or tracking.last_route_point_location is None
        if not (first or ignition_changed):
            if state is not DerivedState.TRIP:
                return None
            assert tracking.last_route_point_at is not None  # noqa: S101
            assert tracking.last_route_point_location is not None  # noqa: S101
            elapsed = (signal.provider_timestamp - tracking.last_route_point_at).total_seconds()
            last = tracking.last_route_point_location
            moved = haversine_m(last.latitude, last.longitude, signal.latitude, signal.longitude)
            if elapsed < ROUTE_POINT_MIN_INTERVAL_SECONDS and moved < ROUTE_POINT_MIN_DISTANCE_M:
                return None

        is_moving = False
        speed: float | None = None
        if tracking.last_location is not None:
            step = haversine_m(
                tracking.last_location.latitude,
                tracking.last_location.longitude,
                signal.latitude,
                signal.longitude,
            )
            is_moving = step > MOVING_THRESHOLD_M
            if tracking.last_update is not None:
                elapsed = (signal.provider_timestamp - tracking.last_update).total_seconds()
                if elapsed >= SPEED_MIN_ELAPSED_SECONDS:
                    speed = step / elapsed * 3.6

        point = RoutePoint(
            vehicle_id=signal.vehicle_id,
            timestamp=signal.provider_timestamp,
            latitude=signal.latitude,
            longitude=signal.longitude,
            battery_level=signal.state_of_charge_pct,
            ignition_status=signal.ignition,
            is_moving=is_moving,
            speed=speed,
        )
        await self._store_point(point, tracking)
        return point

    async def _store_point(self, point: RoutePoint, tracking: VehicleTracking) -> None:
        try:
            await self._store.insert_route_point(point)
            if tracking.active_trip_id is not None:
                await self._store.append_trip_route_point(tracking.active_trip_id, point, self._keep_last)
        except StoreError:
            _logger.error("Could not store route point for %s", point.vehicle_id, exc_info=True)
        tracking.last_route_point_at = point.timestamp
        tracking.last_route_point_location = point.location

    async def _emit_ignition_change(self, signal: TelemetrySignal, tracking: VehicleTracking) -> None:
        previous = tracking.last_ignition
        if previous is None or previous.is_running == signal.ignition.is_running:
            return
        event_type = FleetEventType.IGNITION_ON if signal.ignition.is_running else FleetEventType.IGNITION_OFF
        await self._events.publish(
            FleetEvent(
                type=event_type,
                vehicle_id=signal.vehicle_id,
                timestamp=signal.provider_timestamp,
                location=signal.location,
                trip_id=tracking.active_trip_id,
                metrics={"ignition": signal.ignition.value, "batteryPct": signal.state_of_charge_pct},
            )
        )

    async def aclose(self) -> None:
        for vehicle_id in list(self._pending):
            self._timers.cancel((_TIMER_KIND, vehicle_id))
