"""fleetstate - vehicle telemetry state and trip engine."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("fleetstate")
except PackageNotFoundError:
    __version__ = "0+local"

from fleetstate.config import FleetConfig, Geofence, KnownSite, RetryPolicy
from fleetstate.events import EventBus
from fleetstate.exceptions import (
    ActiveTripExistsError,
    FleetConfigError,
    FleetError,
    ProviderAuthExpired,
    ProviderError,
    ProviderUnavailable,
    StoreError,
    StoreUnavailable,
)
from fleetstate.models import (
    CanonicalVehicleState,
    DerivedState,
    FleetEvent,
    FleetEventType,
    MissedTripCandidate,
    ParkingSession,
    RoutePoint,
    TelemetrySignal,
    Trip,
)
from fleetstate.monitor import FleetMonitor

__all__ = [
    "__version__",
    "ActiveTripExistsError",
    "CanonicalVehicleState",
    "DerivedState",
    "EventBus",
    "FleetConfig",
    "FleetConfigError",
    "FleetError",
    "FleetEvent",
    "FleetEventType",
    "FleetMonitor",
    "Geofence",
    "KnownSite",
    "MissedTripCandidate",
    "ParkingSession",
    "ProviderAuthExpired",
    "ProviderError",
    "ProviderUnavailable",
    "RetryPolicy",
    "RoutePoint",
    "StoreError",
    "StoreUnavailable",
    "TelemetrySignal",
    "Trip",
]
