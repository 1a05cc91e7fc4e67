"""Telemetry provider HTTP client.

Implements the :class:`TelemetryProvider` and :class:`TripDistanceAuthority`
contracts against a Ford-style telematics API:

* ``POST /token`` exchanges client credentials for a bearer token.
* ``GET /v1/vehicles`` lists the enrolled fleet.
* ``GET /v1/vehicle/{vin}/status?signal-filter=...`` returns current signals.
* ``GET /v1/vehicle/{vin}/trip?start-time&end-time&page-size`` returns the
  provider's own trip summaries, used as the authority for trip distance.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar

import aiohttp
from pydantic import ValidationError

from fleetstate._constants import (
    AUTH_EXPIRED_STATUS_CODES,
    DEFAULT_SIGNAL_FILTER,
    RETRYABLE_STATUS_CODES,
    TRIP_PAGE_SIZE,
)
from fleetstate.config import FleetConfig
from fleetstate.exceptions import FleetError, ProviderAuthExpired, ProviderError, ProviderUnavailable
from fleetstate.ingestion.normalize import safe_float
from fleetstate.models.provider import ProviderSignal, ProviderTrip, ProviderVehicle

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Refresh the token this many seconds before the provider says it expires.
_TOKEN_REFRESH_MARGIN = 30.0


class TelemetryProvider(Protocol):
    """Structural provider interface used by the monitor.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (:class:`HttpTelemetryProvider`)
    concrete.
    """

    async def list_vehicles(self) -> list[ProviderVehicle]: ...

    async def get_signal(
        self,
        vehicle_id: str,
        signal_filter: Sequence[str] = DEFAULT_SIGNAL_FILTER,
    ) -> ProviderSignal: ...


class TripDistanceAuthority(Protocol):
    async def get_trips_in_range(self, vehicle_id: str, start: datetime, end: datetime) -> list[ProviderTrip]: ...


def _isoformat(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class HttpTelemetryProvider:
    """Async client for the telemetry provider.

    Usage::

        async with HttpTelemetryProvider(config) as provider:
            vehicles = await provider.list_vehicles()
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        token_provider: Callable[[], Awaitable[str]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._token_provider = token_provider
        self._sleep = sleep
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> HttpTelemetryProvider:
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._config.provider_timeout)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self._http_session is None:
            raise FleetError("Provider not initialized. Use 'async with HttpTelemetryProvider(...) as provider:'")
        return self._http_session

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def ensure_token(self) -> str:
        """Return a valid bearer token, fetching a new one when expired."""
        async with self._token_lock:
            if self._token is not None and time.monotonic() < self._token_expires_at:
                return self._token
            if self._token_provider is not None:
                self._token = await self._token_provider()
                self._token_expires_at = float("inf")
            else:
                self._token, ttl = await self._fetch_token()
                self._token_expires_at = time.monotonic() + max(0.0, ttl - _TOKEN_REFRESH_MARGIN)
            return self._token

    def invalidate_token(self) -> None:
        """Force token invalidation (next call will re-authenticate)."""
        self._token = None
        self._token_expires_at = 0.0

    async def _fetch_token(self) -> tuple[str, float]:
        endpoint = "/token"
        url = f"{self._config.provider_base_url}{endpoint}"
        form = {
            "clientId": self._config.provider_client_id,
            "clientSecret": self._config.provider_client_secret,
        }
        _logger.debug("POST %s", url)
        try:
            async with self._require_session().post(url, data=form) as resp:
                text = await resp.text()
                if resp.status in AUTH_EXPIRED_STATUS_CODES:
                    raise ProviderError(
                        f"Credentials rejected by {endpoint}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
                if resp.status != 200:
                    raise ProviderUnavailable(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
                body = await resp.json(content_type=None)
        except ProviderError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderUnavailable(f"Request to {endpoint} failed: {exc}", endpoint=endpoint) from exc
        except ValueError as exc:
            raise ProviderError(f"Invalid JSON from {endpoint}", endpoint=endpoint) from exc

        token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise ProviderError(f"Missing 'access_token' from {endpoint}", endpoint=endpoint)
        ttl = safe_float(body.get("expires_in")) or 300.0
        _logger.info("Provider token refreshed (expires in %.0fs)", ttl)
        return token, ttl

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _get_json(
        self,
        endpoint: str,
        params: dict[str, str] | None = None,
        *,
        vehicle_id: str | None = None,
    ) -> dict[str, Any]:
        """Single authenticated GET, mapping failures onto provider errors."""
        token = await self.ensure_token()
        url = f"{self._config.provider_base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        _logger.debug("GET %s %s", url, params or "")
        try:
            async with self._require_session().get(url, params=params, headers=headers) as resp:
                text = await resp.text()
                if resp.status in AUTH_EXPIRED_STATUS_CODES:
                    raise ProviderAuthExpired(
                        f"HTTP {resp.status} from {endpoint}",
                        vehicle_id=vehicle_id,
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
                if resp.status in RETRYABLE_STATUS_CODES:
                    raise ProviderUnavailable(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        vehicle_id=vehicle_id,
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
                if resp.status != 200:
                    raise ProviderError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        vehicle_id=vehicle_id,
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
                body = await resp.json(content_type=None)
        except ProviderError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderUnavailable(
                f"Request to {endpoint} failed: {exc}",
                vehicle_id=vehicle_id,
                endpoint=endpoint,
            ) from exc
        except ValueError as exc:
            raise ProviderError(f"Invalid JSON from {endpoint}", vehicle_id=vehicle_id, endpoint=endpoint) from exc

        if not isinstance(body, dict):
            raise ProviderError(f"Unexpected payload from {endpoint}", vehicle_id=vehicle_id, endpoint=endpoint)
        return body

    async def _call_with_reauth(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run a provider call, retrying once on an expired token."""
        try:
            return await fn()
        except ProviderAuthExpired:
            _logger.info("Provider token rejected; refreshing and retrying once")
            self.invalidate_token()
            await self.ensure_token()
            return await fn()

    async def _request(
        self,
        endpoint: str,
        params: dict[str, str] | None = None,
        *,
        vehicle_id: str | None = None,
    ) -> dict[str, Any]:
        """GET with re-authentication and exponential backoff (1 s, 2 s, 4 s, ...)."""
        attempts = max(1, self._config.provider_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self._call_with_reauth(lambda: self._get_json(endpoint, params, vehicle_id=vehicle_id))
            except ProviderUnavailable as exc:
                if attempt >= attempts:
                    raise
                delay = float(2 ** (attempt - 1))
                _logger.warning(
                    "Provider %s failed for %s (attempt %d/%d), retrying in %.1fs: %s",
                    endpoint,
                    vehicle_id or "-",
                    attempt,
                    attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def list_vehicles(self) -> list[ProviderVehicle]:
        body = await self._request("/v1/vehicles", {"page-size": str(TRIP_PAGE_SIZE)})
        vehicles = body.get("vehicles")
        if not isinstance(vehicles, list):
            return []
        result: list[ProviderVehicle] = []
        for item in vehicles:
            try:
                result.append(ProviderVehicle.model_validate(item))
            except ValidationError:
                _logger.debug("Skipping malformed vehicle entry: %s", item)
        _logger.info("Provider reports %d vehicles", len(result))
        return result

    async def get_signal(
        self,
        vehicle_id: str,
        signal_filter: Sequence[str] = DEFAULT_SIGNAL_FILTER,
    ) -> ProviderSignal:
        params = {"signal-filter": ",".join(signal_filter)} if signal_filter else None
        body = await self._request(f"/v1/vehicle/{vehicle_id}/status", params, vehicle_id=vehicle_id)
        signal = ProviderSignal.from_api(vehicle_id, body)
        _logger.debug(
            "Provider signal for %s: ignition=%s position=%s ts=%s",
            vehicle_id,
            signal.ignition,
            signal.position,
            signal.timestamp,
        )
        return signal

    async def get_trips_in_range(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        page_size: int = TRIP_PAGE_SIZE,
    ) -> list[ProviderTrip]:
        params = {
            "start-time": _isoformat(start),
            "end-time": _isoformat(end),
            "page-size": str(page_size),
        }
        body = await self._request(f"/v1/vehicle/{vehicle_id}/trip", params, vehicle_id=vehicle_id)
        trips = body.get("trips")
        if not isinstance(trips, list):
            return []
        result: list[ProviderTrip] = []
        for item in trips:
            try:
                result.append(ProviderTrip.model_validate(item))
            except ValidationError:
                _logger.debug("Skipping malformed trip summary for %s: %s", vehicle_id, item)
        return result
