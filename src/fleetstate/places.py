"""Place resolution.

Matches coordinates against the configured client sites and otherwise
asks an optional geocoder, falling back to a coordinate string.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol

from fleetstate._geo import format_coordinates, haversine_m
from fleetstate.config import KnownSite
from fleetstate.models.state import DerivedState, Place, PlaceSource

_logger = logging.getLogger(__name__)

Geocoder = Callable[[float, float], Awaitable[str | None]]


class PlaceResolver(Protocol):
    def match_site(self, latitude: float, longitude: float) -> str | None:
        """Name of the known site containing the point, if any."""
        ...

    async def resolve(self, latitude: float, longitude: float, context_state: DerivedState | None = None) -> Place: ...


class SiteDirectoryResolver:
    """:class:`PlaceResolver` over a fixed list of client sites."""

    def __init__(self, sites: Sequence[KnownSite] = (), *, geocoder: Geocoder | None = None) -> None:
        self._sites = tuple(sites)
        self._geocoder = geocoder

    def match_site(self, latitude: float, longitude: float) -> str | None:
        best: tuple[float, KnownSite] | None = None
        for site in self._sites:
            distance = haversine_m(latitude, longitude, site.latitude, site.longitude)
            if distance <= site.radius_m and (best is None or distance < best[0]):
                best = (distance, site)
        return best[1].name if best is not None else None

    async def resolve(self, latitude: float, longitude: float, context_state: DerivedState | None = None) -> Place:
        site = self.match_site(latitude, longitude)
        if site is not None:
            return Place(display_name=site, source_kind=PlaceSource.CLIENT)
        if self._geocoder is not None:
            try:
                address = await self._geocoder(latitude, longitude)
            except Exception:
                _logger.warning(
                    "Geocoding %s failed (state=%s); using coordinates",
                    format_coordinates(latitude, longitude),
                    context_state,
                    exc_info=True,
                )
                address = None
            if address:
                return Place(display_name=address, source_kind=PlaceSource.PLACES)
        return Place(display_name=format_coordinates(latitude, longitude), source_kind=PlaceSource.COORDINATES)
