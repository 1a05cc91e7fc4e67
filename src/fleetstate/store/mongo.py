"""MongoDB signal store.

Collections
-----------
``signals_critical`` / ``signals_important`` / ``signals_routine``
    Tiered signal retention, expired through a TTL index on ``expiresAt``.
``vehicle_state``
    One canonical state per vehicle (unique ``vehicleId``).
``route_points``
    Append-only GPS samples with a 30-day TTL on ``timestamp``.
``trips``
    Trip records.  A partial unique index on ``vehicleId`` restricted to
    ``isActive: true`` enforces one active trip per vehicle atomically.
``parking_sessions`` / ``vehicle_tracking``
    Parking sessions and the mirrored tracking arena.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import DuplicateKeyError

from fleetstate._constants import ROUTE_POINT_RETENTION_DAYS
from fleetstate.config import FleetConfig, RetryPolicy
from fleetstate.exceptions import ActiveTripExistsError, StoreError
from fleetstate.models.parking import ParkingSession
from fleetstate.models.signal import STORED_TIERS, SignalDecision, TelemetrySignal
from fleetstate.models.state import CanonicalVehicleState
from fleetstate.models.tracking import VehicleTracking
from fleetstate.models.trip import RoutePoint, Trip
from fleetstate.store.retry import run_with_retry

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_NO_ID = {"_id": False}


def _signal_collection(tier: Any) -> str:
    return f"signals_{tier}"


class MongoSignalStore:
    """:class:`~fleetstate.store.base.SignalStore` backed by MongoDB.

    Every operation runs under the configured :class:`RetryPolicy`;
    network and authentication failures rebuild the client before the
    next attempt.
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        client_factory: Callable[[], AsyncMongoClient[dict[str, Any]]] | None = None,
    ) -> None:
        self._config = config
        self._policy = config.store_retry
        self._client_factory = client_factory or self._default_client
        self._client: AsyncMongoClient[dict[str, Any]] | None = None

    def _default_client(self) -> AsyncMongoClient[dict[str, Any]]:
        return AsyncMongoClient(self._config.mongo_uri, tz_aware=True, serverSelectionTimeoutMS=10_000)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, ping and ensure indexes (retried with ``connect_attempts``)."""

        async def _connect() -> None:
            if self._client is None:
                self._client = self._client_factory()
            await self._client.admin.command("ping")
            await self._ensure_indexes()

        await run_with_retry(
            _connect,
            name="connect",
            policy=RetryPolicy(
                max_attempts=self._config.connect_attempts,
                base_delay=self._policy.base_delay,
                max_delay=self._policy.max_delay,
                jitter=self._policy.jitter,
            ),
            reconnect=self._reset,
        )
        _logger.info("Connected to MongoDB database %s", self._config.mongo_database)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def _reset(self) -> None:
        _logger.info("Rebuilding MongoDB connection")
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.close()
            except Exception:
                _logger.debug("Closing stale MongoDB client failed", exc_info=True)
        self._client = self._client_factory()

    def _db(self) -> Any:
        if self._client is None:
            raise StoreError("Store not connected. Use 'await store.connect()' first.", operation="db")
        return self._client[self._config.mongo_database]

    async def _run(self, name: str, fn: Callable[[], Awaitable[T]], *, vehicle_id: str | None = None) -> T:
        return await run_with_retry(fn, name=name, policy=self._policy, reconnect=self._reset, vehicle_id=vehicle_id)

    async def _ensure_indexes(self) -> None:
        db = self._db()
        for tier in STORED_TIERS:
            coll = db[_signal_collection(tier)]
            await coll.create_index([("vehicleId", ASCENDING), ("providerTimestamp", DESCENDING)])
            await coll.create_index("expiresAt", expireAfterSeconds=0)
        await db.vehicle_state.create_index("vehicleId", unique=True)
        await db.route_points.create_index([("vehicleId", ASCENDING), ("timestamp", DESCENDING)])
        await db.route_points.create_index("timestamp", expireAfterSeconds=ROUTE_POINT_RETENTION_DAYS * 86400)
        await db.trips.create_index("id", unique=True)
        await db.trips.create_index([("vehicleId", ASCENDING), ("ignitionOnTime", DESCENDING)])
        await db.trips.create_index(
            "vehicleId",
            name="one_active_trip_per_vehicle",
            unique=True,
            partialFilterExpression={"isActive": True},
        )
        await db.parking_sessions.create_index("id", unique=True)
        await db.parking_sessions.create_index([("vehicleId", ASCENDING), ("isCurrentlyParked", ASCENDING)])
        await db.vehicle_tracking.create_index("vehicleId", unique=True)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    async def insert_signal(self, signal: TelemetrySignal, decision: SignalDecision) -> None:
        if not decision.should_store:
            return
        retention = decision.tier.retention
        document = signal.to_document()
        document["tier"] = decision.tier.value
        document["reasons"] = list(decision.reasons)
        document["expiresAt"] = signal.provider_timestamp + retention if retention is not None else None

        async def _insert() -> None:
            await self._db()[_signal_collection(decision.tier)].insert_one(document)

        await self._run("insert_signal", _insert, vehicle_id=signal.vehicle_id)

    async def latest_signal(self, vehicle_id: str) -> TelemetrySignal | None:
        async def _latest() -> TelemetrySignal | None:
            newest: dict[str, Any] | None = None
            for tier in STORED_TIERS:
                doc = await self._db()[_signal_collection(tier)].find_one(
                    {"vehicleId": vehicle_id},
                    _NO_ID,
                    sort=[("providerTimestamp", DESCENDING)],
                )
                if doc is not None and (newest is None or doc["providerTimestamp"] > newest["providerTimestamp"]):
                    newest = doc
            return TelemetrySignal.model_validate(newest) if newest is not None else None

        return await self._run("latest_signal", _latest, vehicle_id=vehicle_id)

    async def signal_history(
        self,
        vehicle_id: str,
        since: datetime,
        until: datetime | None = None,
        limit: int = 1000,
    ) -> list[TelemetrySignal]:
        window: dict[str, Any] = {"$gte": since}
        if until is not None:
            window["$lte"] = until

        async def _history() -> list[TelemetrySignal]:
            docs: list[dict[str, Any]] = []
            for tier in STORED_TIERS:
                cursor = (
                    self._db()[_signal_collection(tier)]
                    .find({"vehicleId": vehicle_id, "providerTimestamp": window}, _NO_ID)
                    .sort("providerTimestamp", ASCENDING)
                    .limit(limit)
                )
                docs.extend(await cursor.to_list(length=None))
            docs.sort(key=lambda doc: doc["providerTimestamp"])
            return [TelemetrySignal.model_validate(doc) for doc in docs[:limit]]

        return await self._run("signal_history", _history, vehicle_id=vehicle_id)

    # ------------------------------------------------------------------
    # Canonical state
    # ------------------------------------------------------------------

    async def get_state(self, vehicle_id: str) -> CanonicalVehicleState | None:
        async def _get() -> CanonicalVehicleState | None:
            doc = await self._db().vehicle_state.find_one({"vehicleId": vehicle_id}, _NO_ID)
            return CanonicalVehicleState.model_validate(doc) if doc is not None else None

        return await self._run("get_state", _get, vehicle_id=vehicle_id)

    async def save_state(self, state: CanonicalVehicleState) -> None:
        async def _save() -> None:
            await self._db().vehicle_state.replace_one(
                {"vehicleId": state.vehicle_id}, state.to_document(), upsert=True
            )

        await self._run("save_state", _save, vehicle_id=state.vehicle_id)

    # ------------------------------------------------------------------
    # Route points
    # ------------------------------------------------------------------

    async def insert_route_point(self, point: RoutePoint) -> None:
        async def _insert() -> None:
            await self._db().route_points.insert_one(point.to_document())

        await self._run("insert_route_point", _insert, vehicle_id=point.vehicle_id)

    async def recent_route_points(self, vehicle_id: str, since: datetime, limit: int) -> list[RoutePoint]:
        async def _recent() -> list[RoutePoint]:
            cursor = (
                self._db()
                .route_points.find({"vehicleId": vehicle_id, "timestamp": {"$gte": since}}, _NO_ID)
                .sort("timestamp", DESCENDING)
                .limit(limit)
            )
            return [RoutePoint.model_validate(doc) for doc in await cursor.to_list(length=None)]

        return await self._run("recent_route_points", _recent, vehicle_id=vehicle_id)

    async def route_points_between(self, vehicle_id: str, start: datetime, end: datetime) -> list[RoutePoint]:
        async def _between() -> list[RoutePoint]:
            cursor = (
                self._db()
                .route_points.find({"vehicleId": vehicle_id, "timestamp": {"$gte": start, "$lte": end}}, _NO_ID)
                .sort("timestamp", ASCENDING)
            )
            return [RoutePoint.model_validate(doc) for doc in await cursor.to_list(length=None)]

        return await self._run("route_points_between", _between, vehicle_id=vehicle_id)

    # ------------------------------------------------------------------
    # Trips
    # ------------------------------------------------------------------

    async def get_active_trip(self, vehicle_id: str) -> Trip | None:
        async def _get() -> Trip | None:
            doc = await self._db().trips.find_one({"vehicleId": vehicle_id, "isActive": True}, _NO_ID)
            return Trip.model_validate(doc) if doc is not None else None

        return await self._run("get_active_trip", _get, vehicle_id=vehicle_id)

    async def get_trip(self, trip_id: str) -> Trip | None:
        async def _get() -> Trip | None:
            doc = await self._db().trips.find_one({"id": trip_id}, _NO_ID)
            return Trip.model_validate(doc) if doc is not None else None

        return await self._run("get_trip", _get)

    async def insert_trip(self, trip: Trip) -> None:
        async def _insert() -> None:
            await self._db().trips.insert_one(trip.to_document())

        try:
            await self._run("insert_trip", _insert, vehicle_id=trip.vehicle_id)
        except StoreError as exc:
            if not isinstance(exc.__cause__, DuplicateKeyError):
                raise
            existing = await self.get_active_trip(trip.vehicle_id)
            raise ActiveTripExistsError(
                f"Vehicle {trip.vehicle_id} already has an active trip",
                vehicle_id=trip.vehicle_id,
                existing_trip_id=existing.id if existing is not None else None,
            ) from exc.__cause__

    async def update_trip(self, trip: Trip) -> None:
        async def _update() -> None:
            await self._db().trips.replace_one({"id": trip.id}, trip.to_document())

        await self._run("update_trip", _update, vehicle_id=trip.vehicle_id)

    async def append_trip_route_point(self, trip_id: str, point: RoutePoint, keep_last: int) -> None:
        push: dict[str, Any] = {"$each": [point.to_document()]}
        if keep_last > 0:
            push["$slice"] = -keep_last

        async def _append() -> None:
            await self._db().trips.update_one(
                {"id": trip_id},
                {"$push": {"routePoints": push}, "$set": {"lastUpdated": point.timestamp}},
            )

        await self._run("append_trip_route_point", _append, vehicle_id=point.vehicle_id)

    async def trips_between(self, vehicle_id: str, start: datetime, end: datetime) -> list[Trip]:
        query = {
            "vehicleId": vehicle_id,
            "ignitionOnTime": {"$lte": end},
            "$or": [{"ignitionOffTime": None}, {"ignitionOffTime": {"$gte": start}}],
        }

        async def _between() -> list[Trip]:
            cursor = self._db().trips.find(query, _NO_ID).sort("ignitionOnTime", ASCENDING)
            return [Trip.model_validate(doc) for doc in await cursor.to_list(length=None)]

        return await self._run("trips_between", _between, vehicle_id=vehicle_id)

    async def latest_closed_trip(self, vehicle_id: str, since: datetime) -> Trip | None:
        async def _latest() -> Trip | None:
            doc = await self._db().trips.find_one(
                {"vehicleId": vehicle_id, "isActive": False, "ignitionOffTime": {"$gte": since}},
                _NO_ID,
                sort=[("ignitionOffTime", DESCENDING)],
            )
            return Trip.model_validate(doc) if doc is not None else None

        return await self._run("latest_closed_trip", _latest, vehicle_id=vehicle_id)

    # ------------------------------------------------------------------
    # Parking sessions
    # ------------------------------------------------------------------

    async def list_open_parking_sessions(self) -> list[ParkingSession]:
        async def _list() -> list[ParkingSession]:
            cursor = self._db().parking_sessions.find({"isCurrentlyParked": True}, _NO_ID)
            return [ParkingSession.model_validate(doc) for doc in await cursor.to_list(length=None)]

        return await self._run("list_open_parking_sessions", _list)

    async def insert_parking_session(self, session: ParkingSession) -> None:
        async def _insert() -> None:
            await self._db().parking_sessions.insert_one(session.to_document())

        await self._run("insert_parking_session", _insert, vehicle_id=session.vehicle_id)

    async def update_parking_session(self, session: ParkingSession) -> None:
        async def _update() -> None:
            await self._db().parking_sessions.replace_one({"id": session.id}, session.to_document())

        await self._run("update_parking_session", _update, vehicle_id=session.vehicle_id)

    # ------------------------------------------------------------------
    # Tracking arena
    # ------------------------------------------------------------------

    async def load_tracking(self) -> list[VehicleTracking]:
        async def _load() -> list[VehicleTracking]:
            cursor = self._db().vehicle_tracking.find({}, _NO_ID)
            return [VehicleTracking.model_validate(doc) for doc in await cursor.to_list(length=None)]

        return await self._run("load_tracking", _load)

    async def save_tracking(self, tracking: VehicleTracking) -> None:
        async def _save() -> None:
            await self._db().vehicle_tracking.replace_one(
                {"vehicleId": tracking.vehicle_id}, tracking.to_document(), upsert=True
            )

        await self._run("save_tracking", _save, vehicle_id=tracking.vehicle_id)
