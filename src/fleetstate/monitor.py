"""Fleet monitor: wires ingestion, the engine services and the store."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from fleetstate.config import FleetConfig
from fleetstate.engine.deriver import Derivation, StateDeriver
from fleetstate.engine.gps_parking import GpsParkingDetector
from fleetstate.engine.parking import ParkingSessionTracker
from fleetstate.engine.reconstruction import MissedTripReconstructor
from fleetstate.engine.signal_filter import SmartSignalFilter
from fleetstate.engine.timers import GraceTimers
from fleetstate.engine.tracking import TrackingArena
from fleetstate.engine.trips import TripLifecycleManager
from fleetstate.events import EventBus
from fleetstate.exceptions import FleetError, ProviderError, StoreError
from fleetstate.ingestion.provider import HttpTelemetryProvider, TelemetryProvider, TripDistanceAuthority
from fleetstate.ingestion.signals import build_signal
from fleetstate.models.reconstruction import MissedTripCandidate
from fleetstate.models.signal import TelemetrySignal
from fleetstate.models.trip import Trip
from fleetstate.places import PlaceResolver, SiteDirectoryResolver
from fleetstate.scheduler import PollingScheduler
from fleetstate.store.base import SignalStore
from fleetstate.store.mongo import MongoSignalStore

_logger = logging.getLogger(__name__)


class FleetMonitor:
    """Process telemetry for a fleet of vehicles.

    Usage::

        async with FleetMonitor(config) as monitor:
            await monitor.run(stop_event)

    Signals for one vehicle are processed strictly one at a time; signals
    for different vehicles may interleave.  Store, provider and place
    collaborators default to the production implementations and can be
    replaced for tests.
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        store: SignalStore | None = None,
        provider: TelemetryProvider | None = None,
        distance_authority: TripDistanceAuthority | None = None,
        places: PlaceResolver | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._owns_store = store is None
        self._store: SignalStore = store if store is not None else MongoSignalStore(config)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._vehicle_ids: list[str] = list(config.vehicle_ids)

        if provider is None:
            http = HttpTelemetryProvider(config)
            self._provider: TelemetryProvider = http
            self._http_provider: HttpTelemetryProvider | None = http
            authority: TripDistanceAuthority | None = distance_authority or http
        else:
            self._provider = provider
            self._http_provider = None
            authority = distance_authority

        self.places: PlaceResolver = places if places is not None else SiteDirectoryResolver(config.known_sites)
        self.events = events if events is not None else EventBus()
        self.timers = GraceTimers()
        self.arena = TrackingArena(self._store)
        self.signal_filter = SmartSignalFilter(self._store)
        self.detector = GpsParkingDetector(self._store)
        self.deriver = StateDeriver(
            self._store,
            self.detector,
            self.places,
            settle_seconds=config.parking_grace_seconds,
        )
        self.trips = TripLifecycleManager(
            self._store,
            self.places,
            self.events,
            self.timers,
            self.arena,
            config,
            distance_authority=authority,
        )
        self.parking = ParkingSessionTracker(
            self._store,
            self.places,
            self.events,
            self.timers,
            self.arena,
            config.parking_grace_seconds,
        )
        self.reconstructor = MissedTripReconstructor(
            self._store,
            lookback=timedelta(hours=config.reconstruction_lookback_hours),
            clock=self._clock,
        )

    @property
    def store(self) -> SignalStore:
        return self._store

    @property
    def vehicle_ids(self) -> list[str]:
        return list(self._vehicle_ids)

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FleetMonitor:
        await self._store.connect()
        if self._http_provider is not None:
            await self._http_provider.__aenter__()
        await self.arena.load()
        await self.parking.load()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.trips.aclose()
        await self.timers.aclose()
        if self._http_provider is not None:
            await self._http_provider.__aexit__(*exc)
        if self._owns_store:
            await self._store.close()

    # ------------------------------------------------------------------
    # Signal pipeline
    # ------------------------------------------------------------------

    async def process_signal(self, signal: TelemetrySignal) -> Derivation:
        """Run one signal through the filter, deriver, trip and parking services."""
        vehicle_id = signal.vehicle_id
        async with self.arena.lock(vehicle_id):
            stale = await self.deriver.check_stale(signal)
            if stale is not None:
                return stale
            await self.signal_filter.process(signal)
            await self.trips.check_geofence(signal)
            derivation = await self.deriver.derive(signal)
            await self.deriver.save(derivation.state)

            tracking = self.arena.get(vehicle_id)
            previous_ignition = tracking.last_ignition
            await self.trips.handle(signal, derivation)
            await self.parking.handle(signal, derivation, previous_ignition)
            tracking.observe(signal)
            await self.arena.flush(vehicle_id)
            return derivation

    async def poll_vehicle(self, vehicle_id: str) -> Derivation | None:
        """Fetch and process the current signal of *vehicle_id*.

        Provider failures are logged and skip this tick.
        """
        try:
            provider_signal = await self._provider.get_signal(vehicle_id)
        except ProviderError as exc:
            _logger.warning("Skipping %s this cycle: %s", vehicle_id, exc)
            return None
        signal = build_signal(provider_signal, received_at=self._clock())
        if signal is None:
            return None
        return await self.process_signal(signal)

    async def discover_vehicles(self) -> list[str]:
        """Use configured vehicles, or ask the provider for the fleet."""
        if self._vehicle_ids:
            return self.vehicle_ids
        vehicles = await self._provider.list_vehicles()
        self._vehicle_ids = [v.vin for v in vehicles]
        _logger.info("Monitoring %d vehicles", len(self._vehicle_ids))
        return self.vehicle_ids

    # ------------------------------------------------------------------
    # Missed trips
    # ------------------------------------------------------------------

    async def find_missed_trips(self) -> dict[str, list[MissedTripCandidate]]:
        return await self.reconstructor.find_missed_trips(self._vehicle_ids)

    async def sweep_missed_trips(self) -> list[Trip]:
        """Scan for missed trips and reconstruct those above the auto-accept level."""
        candidates = await self.find_missed_trips()
        threshold = self._config.reconstruction_auto_accept
        reconstructed: list[Trip] = []
        for vehicle_id, found in candidates.items():
            for candidate in found:
                if threshold is None or candidate.confidence_pct < threshold:
                    _logger.info(
                        "Missed trip candidate for %s: %s -> %s (%.0f%%)",
                        vehicle_id,
                        candidate.estimated_start.isoformat(),
                        candidate.estimated_end.isoformat(),
                        candidate.confidence_pct,
                    )
                    continue
                async with self.arena.lock(vehicle_id):
                    try:
                        reconstructed.append(await self.reconstructor.reconstruct(candidate))
                    except StoreError:
                        _logger.error("Could not reconstruct trip for %s", vehicle_id, exc_info=True)
        return reconstructed

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        """Poll the fleet until *stop* is set."""
        vehicle_ids: list[str] = []
        while not stop.is_set():
            try:
                vehicle_ids = await self.discover_vehicles()
                break
            except ProviderError:
                _logger.error("Vehicle discovery failed; retrying in 30s", exc_info=True)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=30)
        if not vehicle_ids:
            if not stop.is_set():
                raise FleetError("No vehicles to monitor")
            return

        scheduler = PollingScheduler(
            self.poll_vehicle,
            lambda: self._vehicle_ids,
            self._config,
            sweep=self.sweep_missed_trips,
            clock=self._clock,
        )
        await scheduler.run(stop)
