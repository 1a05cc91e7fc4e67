"""GPS parking detector.

Uses stored route points as ground truth for whether a vehicle is
stationary, independently of the ignition flag.  The decision uses the
*maximum* displacement between consecutive samples, not first-to-last
distance, so a vehicle that drove off and came back is not parked.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from fleetstate._constants import (
    DEFAULT_MAX_DISPLACEMENT_M,
    DEFAULT_MIN_DWELL_SECONDS,
    EXTENDED_MAX_DISPLACEMENT_M,
    EXTENDED_SAMPLE_LIMIT,
    EXTENDED_WINDOW_SECONDS,
    PRIMARY_SAMPLE_LIMIT,
    PRIMARY_WINDOW_SECONDS,
    SITE_MAX_DISPLACEMENT_M,
    SITE_MIN_DWELL_SECONDS,
)
from fleetstate._geo import haversine_m
from fleetstate.models._base import GeoPoint
from fleetstate.store.base import SignalStore

_logger = logging.getLogger(__name__)


class GpsVerdict(enum.StrEnum):
    STATIONARY = "stationary"
    MOVING = "moving"
    UNSETTLED = "unsettled"
    """Displacement below threshold but not observed for long enough."""
    UNKNOWN = "unknown"

    @property
    def is_parked(self) -> bool:
        return self is GpsVerdict.STATIONARY


@dataclass(frozen=True)
class GpsAssessment:
    verdict: GpsVerdict
    sample_count: int = 0
    elapsed_seconds: float = 0.0
    max_displacement_m: float | None = None
    window: str = "none"


def max_consecutive_displacement(samples: Sequence[GeoPoint]) -> float:
    return max(
        (
            haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
            for a, b in zip(samples, samples[1:], strict=False)
        ),
        default=0.0,
    )


class GpsParkingDetector:
    """Decide whether a vehicle is stationary from its recent route points."""

    def __init__(self, store: SignalStore) -> None:
        self._store = store

    async def detect(
        self,
        vehicle_id: str,
        location: GeoPoint,
        *,
        at_site: bool,
        now: datetime,
    ) -> GpsAssessment:
        """Assess *location* at *now* against stored history.

        The current fix counts as the newest sample.  Store failures and
        missing history yield ``UNKNOWN``, which callers treat as not
        parked.
        """
        try:
            recent = await self._store.recent_route_points(
                vehicle_id, now - timedelta(seconds=PRIMARY_WINDOW_SECONDS), PRIMARY_SAMPLE_LIMIT
            )
            if recent:
                samples = [location, *(p.location for p in recent)]
                elapsed = (now - recent[-1].timestamp).total_seconds()
                displacement = max_consecutive_displacement(samples)
                min_dwell = SITE_MIN_DWELL_SECONDS if at_site else DEFAULT_MIN_DWELL_SECONDS
                max_displacement = SITE_MAX_DISPLACEMENT_M if at_site else DEFAULT_MAX_DISPLACEMENT_M
                if displacement >= max_displacement:
                    verdict = GpsVerdict.MOVING
                elif elapsed >= min_dwell:
                    verdict = GpsVerdict.STATIONARY
                else:
                    verdict = GpsVerdict.UNSETTLED
                return self._log(
                    vehicle_id,
                    GpsAssessment(verdict, len(samples), elapsed, displacement, "primary"),
                )

            extended = await self._store.recent_route_points(
                vehicle_id, now - timedelta(seconds=EXTENDED_WINDOW_SECONDS), EXTENDED_SAMPLE_LIMIT
            )
        except Exception:
            _logger.warning("GPS parking detection failed for %s", vehicle_id, exc_info=True)
            return GpsAssessment(GpsVerdict.UNKNOWN)

        if not extended:
            return self._log(vehicle_id, GpsAssessment(GpsVerdict.UNKNOWN))

        samples = [location, *(p.location for p in extended)]
        displacement = max_consecutive_displacement(samples)
        verdict = GpsVerdict.STATIONARY if displacement < EXTENDED_MAX_DISPLACEMENT_M else GpsVerdict.MOVING
        elapsed = (now - extended[-1].timestamp).total_seconds()
        return self._log(vehicle_id, GpsAssessment(verdict, len(samples), elapsed, displacement, "extended"))

    @staticmethod
    def _log(vehicle_id: str, assessment: GpsAssessment) -> GpsAssessment:
        _logger.debug(
            "GPS %s for %s: %s (%d samples over %.0fs, max step %s m)",
            assessment.window,
            vehicle_id,
            assessment.verdict,
            assessment.sample_count,
            assessment.elapsed_seconds,
            f"{assessment.max_displacement_m:.1f}" if assessment.max_displacement_m is not None else "-",
        )
        return assessment
