"""Monitor configuration for fleetstate."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from fleetstate._constants import DEFAULT_GEOFENCE_RADIUS_M, DEFAULT_PROVIDER_URL, DEFAULT_SITE_RADIUS_M
from fleetstate.exceptions import FleetConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _parse_coordinates(text: str, *, default_radius: float) -> tuple[float, float, float]:
    parts = [part.strip() for part in text.split(",") if part.strip()]
    if len(parts) not in (2, 3):
        raise FleetConfigError(f"Expected 'lat,lon[,radius_m]', got {text!r}")
    try:
        values = [float(part) for part in parts]
    except ValueError as exc:
        raise FleetConfigError(f"Invalid coordinates {text!r}") from exc
    radius = values[2] if len(values) == 3 else default_radius
    return values[0], values[1], radius


@dataclasses.dataclass(frozen=True)
class Geofence:
    """Circular geofence (the home base)."""

    latitude: float
    longitude: float
    radius_m: float = DEFAULT_GEOFENCE_RADIUS_M
    name: str = "Home base"

    @classmethod
    def parse(cls, text: str) -> Geofence:
        """Parse ``"lat,lon[,radius_m]"``."""
        lat, lon, radius = _parse_coordinates(text, default_radius=DEFAULT_GEOFENCE_RADIUS_M)
        return cls(latitude=lat, longitude=lon, radius_m=radius)


@dataclasses.dataclass(frozen=True)
class KnownSite:
    """A client or business site used for place matching."""

    name: str
    latitude: float
    longitude: float
    radius_m: float = DEFAULT_SITE_RADIUS_M

    @classmethod
    def parse(cls, text: str) -> KnownSite:
        """Parse ``"Name@lat,lon[,radius_m]"``."""
        name, sep, coords = text.partition("@")
        if not sep or not name.strip():
            raise FleetConfigError(f"Expected 'Name@lat,lon[,radius_m]', got {text!r}")
        lat, lon, radius = _parse_coordinates(coords, default_radius=DEFAULT_SITE_RADIUS_M)
        return cls(name=name.strip(), latitude=lat, longitude=lon, radius_m=radius)


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter.

    Parameters
    ----------
    max_attempts : int
        Total attempts including the first one.
    base_delay : float
        Delay in seconds before the second attempt.
    max_delay : float
        Upper bound for a single delay.
    jitter : float
        Fraction of the delay added or removed at random.
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.25

    def delay_for(self, attempt: int, rand: float = 0.5) -> float:
        """Delay after failed *attempt* (1-based); *rand* is a sample in ``[0, 1)``."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        spread = delay * self.jitter
        return max(0.0, delay - spread + 2 * spread * rand)


@dataclasses.dataclass(frozen=True)
class FleetConfig:
    """Monitor configuration.

    Parameters
    ----------
    vehicle_ids : tuple of str
        Vehicles to poll.  When empty the monitor asks the provider for
        the enrolled fleet.
    provider_base_url : str
        Telemetry provider API base URL.
    provider_client_id, provider_client_secret : str
        Client credentials exchanged for a bearer token.
    provider_timeout : float
        Per-request timeout in seconds.
    provider_max_attempts : int
        Attempts per provider call on transient failures (1 s, 2 s, 4 s backoff).
    mongo_uri, mongo_database : str
        Signal store location.
    time_zone : str
        IANA zone used for business hours and same-day trip chaining.
    business_hours_start, business_hours_end : int
        Local hours ``[start, end)`` polled at ``business_interval``.
    business_interval, off_hours_interval : float
        Polling intervals in seconds.
    parking_grace_seconds : float
        Confirmation delay for trip ends and parking sessions.
    route_history_limit : int
        Route points embedded on a trip (oldest dropped first).
    home_base : Geofence or None
        Geofence whose exit synthesizes a departure route point.
    known_sites : tuple of KnownSite
        Client sites for place matching.
    store_retry : RetryPolicy
        Retry policy for individual store operations.
    connect_attempts : int
        Attempts for the initial store connection.
    reconstruction_interval : float
        Seconds between missed-trip sweeps; ``0`` disables the sweep.
    reconstruction_lookback_hours : float
        Default lookback for missed-trip searches.
    reconstruction_auto_accept : float or None
        Confidence at which the sweep materializes candidates.  ``None``
        only reports them.
    """

    vehicle_ids: tuple[str, ...] = ()
    provider_base_url: str = DEFAULT_PROVIDER_URL
    provider_client_id: str = ""
    provider_client_secret: str = ""
    provider_timeout: float = 10.0
    provider_max_attempts: int = 3
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_database: str = "fleetstate"
    time_zone: str = "America/Chicago"
    business_hours_start: int = 6
    business_hours_end: int = 21
    business_interval: float = 5.0
    off_hours_interval: float = 600.0
    parking_grace_seconds: float = 60.0
    route_history_limit: int = 100
    home_base: Geofence | None = None
    known_sites: tuple[KnownSite, ...] = ()
    store_retry: RetryPolicy = dataclasses.field(default_factory=RetryPolicy)
    connect_attempts: int = 10
    reconstruction_interval: float = 0.0
    reconstruction_lookback_hours: float = 24.0
    reconstruction_auto_accept: float | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.business_hours_start <= 24 or not 0 <= self.business_hours_end <= 24:
            raise FleetConfigError("Business hours must be within 0-24")
        if self.business_interval <= 0 or self.off_hours_interval <= 0:
            raise FleetConfigError("Polling intervals must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> FleetConfig:
        """Create configuration from environment variables.

        Reads ``FLEET_*`` variables.  Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        FleetConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "FLEET_PROVIDER_URL": "provider_base_url",
            "FLEET_PROVIDER_CLIENT_ID": "provider_client_id",
            "FLEET_PROVIDER_CLIENT_SECRET": "provider_client_secret",
            "FLEET_MONGO_URI": "mongo_uri",
            "FLEET_MONGO_DATABASE": "mongo_database",
            "FLEET_TIME_ZONE": "time_zone",
        }
        _ENV_FLOAT_MAP = {
            "FLEET_PROVIDER_TIMEOUT": "provider_timeout",
            "FLEET_BUSINESS_INTERVAL": "business_interval",
            "FLEET_OFF_HOURS_INTERVAL": "off_hours_interval",
            "FLEET_PARKING_GRACE_SECONDS": "parking_grace_seconds",
            "FLEET_RECONSTRUCTION_INTERVAL": "reconstruction_interval",
            "FLEET_RECONSTRUCTION_LOOKBACK_HOURS": "reconstruction_lookback_hours",
        }
        _ENV_INT_MAP = {
            "FLEET_PROVIDER_MAX_ATTEMPTS": "provider_max_attempts",
            "FLEET_BUSINESS_HOURS_START": "business_hours_start",
            "FLEET_BUSINESS_HOURS_END": "business_hours_end",
            "FLEET_ROUTE_HISTORY_LIMIT": "route_history_limit",
            "FLEET_CONNECT_ATTEMPTS": "connect_attempts",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val
        try:
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = float(val)
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = int(val)
            auto_accept = env.get("FLEET_RECONSTRUCTION_AUTO_ACCEPT")
            if auto_accept:
                config_kwargs["reconstruction_auto_accept"] = float(auto_accept)
            retries = env.get("FLEET_STORE_MAX_ATTEMPTS")
            if retries is not None and "store_retry" not in overrides:
                config_kwargs["store_retry"] = RetryPolicy(max_attempts=int(retries))
        except ValueError as exc:
            raise FleetConfigError(f"Invalid numeric environment value: {exc}") from exc

        vehicles = env.get("FLEET_VEHICLE_IDS")
        if vehicles:
            config_kwargs["vehicle_ids"] = tuple(v.strip() for v in vehicles.split(",") if v.strip())

        home = env.get("FLEET_HOME_BASE")
        if home:
            config_kwargs["home_base"] = Geofence.parse(home)

        sites = env.get("FLEET_KNOWN_SITES")
        if sites:
            config_kwargs["known_sites"] = tuple(KnownSite.parse(s) for s in sites.split(";") if s.strip())

        report_only = _env_bool(env.get("FLEET_RECONSTRUCTION_REPORT_ONLY"), False)
        if report_only and "reconstruction_auto_accept" not in overrides:
            config_kwargs["reconstruction_auto_accept"] = None

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
