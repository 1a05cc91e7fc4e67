"""Custom exception hierarchy for fleetstate."""

from __future__ import annotations


class FleetError(Exception):
    """Base exception for all fleetstate errors."""


class FleetConfigError(FleetError):
    """Invalid or missing configuration."""


class ProviderError(FleetError):
    """Telemetry provider failure (network, non-200, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        vehicle_id: str | None = None,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.vehicle_id = vehicle_id
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class ProviderUnavailable(ProviderError):
    """Network error, timeout, throttling or 5xx from the provider.

    Retried with backoff by the provider client.  When retries are
    exhausted the vehicle is skipped for the current polling cycle.
    """


class ProviderAuthExpired(ProviderError):
    """Credentials rejected (401/403).

    The provider client catches this internally, refreshes the access
    token and retries the call once.
    """


class StoreError(FleetError):
    """Signal store failure."""

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        vehicle_id: str | None = None,
    ) -> None:
        self.operation = operation
        self.vehicle_id = vehicle_id
        super().__init__(message)


class StoreUnavailable(StoreError):
    """Store operation failed after exhausting its retry policy."""


class ActiveTripExistsError(StoreError):
    """An active trip already exists for the vehicle.

    Raised by the atomic insertion guard.  The trip lifecycle manager
    coalesces into the existing trip instead of surfacing this.
    """

    def __init__(
        self,
        message: str,
        *,
        vehicle_id: str | None = None,
        existing_trip_id: str | None = None,
    ) -> None:
        self.existing_trip_id = existing_trip_id
        super().__init__(message, operation="insert_trip", vehicle_id=vehicle_id)
