"""In-memory per-vehicle tracking arena mirrored to the store."""

from __future__ import annotations

import asyncio
import logging

from fleetstate.exceptions import StoreError
from fleetstate.models.tracking import VehicleTracking
from fleetstate.store.base import SignalStore

_logger = logging.getLogger(__name__)


class TrackingArena:
    """Owns every :class:`VehicleTracking` record.

    Services mutate records obtained from :meth:`get` and call
    :meth:`flush` once per processed signal.
    """

    def __init__(self, store: SignalStore) -> None:
        self._store = store
        self._vehicles: dict[str, VehicleTracking] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def load(self) -> int:
        """Rehydrate from the store; returns the number of vehicles loaded."""
        try:
            records = await self._store.load_tracking()
        except StoreError:
            _logger.error("Could not load vehicle tracking; starting empty", exc_info=True)
            return 0
        for record in records:
            self._vehicles[record.vehicle_id] = record
        _logger.info("Rehydrated tracking for %d vehicles", len(records))
        return len(records)

    def get(self, vehicle_id: str) -> VehicleTracking:
        tracking = self._vehicles.get(vehicle_id)
        if tracking is None:
            tracking = VehicleTracking(vehicle_id=vehicle_id)
            self._vehicles[vehicle_id] = tracking
        return tracking

    def lock(self, vehicle_id: str) -> asyncio.Lock:
        """Per-vehicle lock serializing signal processing and grace timers."""
        lock = self._locks.get(vehicle_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[vehicle_id] = lock
        return lock

    def vehicle_ids(self) -> list[str]:
        return list(self._vehicles)

    async def flush(self, vehicle_id: str) -> None:
        tracking = self._vehicles.get(vehicle_id)
        if tracking is None:
            return
        try:
            await self._store.save_tracking(tracking)
        except StoreError:
            _logger.error("Could not persist tracking for %s; kept in memory", vehicle_id, exc_info=True)
