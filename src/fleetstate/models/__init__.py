"""Pydantic models for fleetstate records and provider payloads."""

from fleetstate.models._base import FleetBaseModel, FleetEnum, GeoPoint
from fleetstate.models.events import FleetEvent, FleetEventType
from fleetstate.models.parking import IgnitionCycle, ParkingSession
from fleetstate.models.provider import ProviderSignal, ProviderTrip, ProviderVehicle
from fleetstate.models.reconstruction import MissedTripCandidate, ReconstructionMethod
from fleetstate.models.signal import IgnitionStatus, SignalDecision, SignalTier, TelemetrySignal
from fleetstate.models.state import CanonicalVehicleState, DerivedState, Place, PlaceSource, StateMetrics
from fleetstate.models.tracking import VehicleTracking
from fleetstate.models.trip import DataSource, DistanceSource, RoutePoint, Trip, TripLocation

__all__ = [
    "CanonicalVehicleState",
    "DataSource",
    "DerivedState",
    "DistanceSource",
    "FleetBaseModel",
    "FleetEnum",
    "FleetEvent",
    "FleetEventType",
    "GeoPoint",
    "IgnitionCycle",
    "IgnitionStatus",
    "MissedTripCandidate",
    "ParkingSession",
    "Place",
    "PlaceSource",
    "ProviderSignal",
    "ProviderTrip",
    "ProviderVehicle",
    "ReconstructionMethod",
    "RoutePoint",
    "SignalDecision",
    "SignalTier",
    "StateMetrics",
    "TelemetrySignal",
    "Trip",
    "TripLocation",
    "VehicleTracking",
]
