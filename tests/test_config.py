from __future__ import annotations

import pytest

from fleetstate.config import FleetConfig, Geofence, KnownSite, RetryPolicy
from fleetstate.exceptions import FleetConfigError


def test_from_env_reads_fleet_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLEET_VEHICLE_IDS", "VIN1, VIN2,")
    monkeypatch.setenv("FLEET_MONGO_URI", "mongodb://db:27017")
    monkeypatch.setenv("FLEET_PARKING_GRACE_SECONDS", "90")
    monkeypatch.setenv("FLEET_BUSINESS_HOURS_START", "7")
    monkeypatch.setenv("FLEET_HOME_BASE", "30.2672,-97.7431,150")
    monkeypatch.setenv("FLEET_KNOWN_SITES", "Acme@30.1,-97.1;Globex@30.2,-97.2,250")
    monkeypatch.setenv("FLEET_STORE_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("FLEET_RECONSTRUCTION_AUTO_ACCEPT", "70")

    config = FleetConfig.from_env()

    assert config.vehicle_ids == ("VIN1", "VIN2")
    assert config.mongo_uri == "mongodb://db:27017"
    assert config.parking_grace_seconds == 90.0
    assert config.business_hours_start == 7
    assert config.home_base == Geofence(latitude=30.2672, longitude=-97.7431, radius_m=150.0)
    assert config.known_sites == (
        KnownSite(name="Acme", latitude=30.1, longitude=-97.1, radius_m=100.0),
        KnownSite(name="Globex", latitude=30.2, longitude=-97.2, radius_m=250.0),
    )
    assert config.store_retry == RetryPolicy(max_attempts=7)
    assert config.reconstruction_auto_accept == 70.0


def test_overrides_take_precedence(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLEET_TIME_ZONE", "Europe/Berlin")

    config = FleetConfig.from_env(time_zone="America/Denver", vehicle_ids=("VIN9",))

    assert config.time_zone == "America/Denver"
    assert config.vehicle_ids == ("VIN9",)


def test_invalid_values_raise_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLEET_OFF_HOURS_INTERVAL", "soon")

    with pytest.raises(FleetConfigError):
        FleetConfig.from_env()
    with pytest.raises(FleetConfigError):
        FleetConfig(business_interval=0)
    with pytest.raises(FleetConfigError):
        KnownSite.parse("30.1,-97.1")
    with pytest.raises(FleetConfigError):
        Geofence.parse("north")
