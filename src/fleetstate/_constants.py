"""Internal constants shared across the library."""

KM_TO_MILES = 0.621371
METERS_PER_MILE = 1609.344
EARTH_RADIUS_M = 6_371_000.0

# ------------------------------------------------------------------
# Smart signal filter
# ------------------------------------------------------------------
LOCATION_CHANGE_M = 10.0
SOC_CHANGE_PCT = 1.0
RANGE_CHANGE_MILES = 2.0
ODOMETER_CHANGE_MILES = 0.1
HEARTBEAT_SECONDS = 15 * 60

CRITICAL_RETENTION_DAYS = 30
IMPORTANT_RETENTION_DAYS = 14
ROUTINE_RETENTION_DAYS = 3
ROUTE_POINT_RETENTION_DAYS = 30

# ------------------------------------------------------------------
# GPS parking detector
# ------------------------------------------------------------------
PRIMARY_WINDOW_SECONDS = 5 * 60
PRIMARY_SAMPLE_LIMIT = 20
SITE_MIN_DWELL_SECONDS = 90
SITE_MAX_DISPLACEMENT_M = 20.0
DEFAULT_MIN_DWELL_SECONDS = 120
DEFAULT_MAX_DISPLACEMENT_M = 15.0
EXTENDED_WINDOW_SECONDS = 30 * 60
EXTENDED_SAMPLE_LIMIT = 10
EXTENDED_MAX_DISPLACEMENT_M = 25.0

# ------------------------------------------------------------------
# State derivation and trips
# ------------------------------------------------------------------
MOVEMENT_EVIDENCE_M = 20.0
ROUTE_POINT_MIN_INTERVAL_SECONDS = 60
ROUTE_POINT_MIN_DISTANCE_M = 25.0
MOVING_THRESHOLD_M = 15.0
SPEED_MIN_ELAPSED_SECONDS = 5
GPS_SEGMENT_MIN_M = 15.0
PROVIDER_TRIP_MATCH_SECONDS = 5 * 60
SHORT_TRIP_SECONDS = 60
GEOFENCE_DEPARTURE_OFFSET_SECONDS = 1
DEFAULT_GEOFENCE_RADIUS_M = 100.0
DEFAULT_SITE_RADIUS_M = 100.0
PARKING_DEPARTURE_M = 804.67

# ------------------------------------------------------------------
# Missed-trip reconstruction
# ------------------------------------------------------------------
RECONSTRUCTION_MIN_DISTANCE_M = 100.0
RECONSTRUCTION_MIN_GAP_SECONDS = 5 * 60
RECONSTRUCTION_MIN_CONFIDENCE = 40.0

# ------------------------------------------------------------------
# Telemetry provider
# ------------------------------------------------------------------
DEFAULT_PROVIDER_URL = "https://api.mps.ford.com/api/fordconnect"
DEFAULT_SIGNAL_FILTER: tuple[str, ...] = (
    "ignition_status",
    "position",
    "odometer",
    "xev_battery_state_of_charge",
    "xev_battery_range",
    "xev_battery_charge_display_status",
    "xev_plug_charger_status",
)
TRIP_PAGE_SIZE = 100
AUTH_EXPIRED_STATUS_CODES: frozenset[int] = frozenset({401, 403})
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})
