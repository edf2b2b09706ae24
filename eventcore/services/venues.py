"""Known venues per city, used for alternative-location suggestions."""

from __future__ import annotations

import math

from eventcore.config import VenueConfig
from eventcore.domain.models import Coordinates, Location

EARTH_RADIUS_KM = 6371.0


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle (haversine) distance between two points."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


class VenueDirectory:
    """Static city -> venues directory. City lookup ignores case."""

    def __init__(self, venues: dict[str, list[VenueConfig]]) -> None:
        self._by_city: dict[str, list[Location]] = {}
        for city, entries in venues.items():
            locations = [
                Location(city=city, venue_name=v.name, coordinates=v.coordinates)
                for v in entries
            ]
            self._by_city.setdefault(city.strip().lower(), []).extend(locations)

    def venues_in(self, city: str) -> list[Location]:
        return list(self._by_city.get(city.strip().lower(), []))

    def alternatives_to(self, location: Location) -> list[Location]:
        """Other venues in the same city as ``location``."""
        return [v for v in self.venues_in(location.city) if v.venue_key != location.venue_key]
