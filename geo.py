# geo.py
import logging
import math
from functools import lru_cache

from geopy.exc import GeopyError
from geopy.geocoders import Nominatim

from errors import DependencyError

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
PREP_MINUTES = 10
AVERAGE_SPEED_KMH = 20.0


def haversine_distance(lat1, lon1, lat2, lon2):
    R = EARTH_RADIUS_KM
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = math.sin(d_lat / 2) ** 2 + math.cos(math.radians(lat1)) * \
        math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def estimate_arrival(distance_km):
    """Minutes to arrive: fixed preparation time plus travel at a flat average speed."""
    minutes = PREP_MINUTES + distance_km / AVERAGE_SPEED_KMH * 60
    return int(math.floor(minutes + 0.5))


class Geocoder:
    """address -> (lat, lng). Returns None when the address cannot be resolved
    and raises DependencyError when the provider itself fails."""

    def resolve(self, address):
        raise NotImplementedError


class NominatimGeocoder(Geocoder):
    def __init__(self, user_agent, timeout=5, cache_size=1024):
        self._geolocator = Nominatim(user_agent=user_agent, timeout=timeout)
        # provider errors raise and are never cached
        self._lookup = lru_cache(maxsize=cache_size)(self._geocode)

    def resolve(self, address):
        return self._lookup(" ".join(address.lower().split()))

    def _geocode(self, key):
        try:
            location = self._geolocator.geocode(key)
        except GeopyError as e:
            raise DependencyError(f"geocoding failed: {e}", dependency="geocoder") from e
        coords = (location.latitude, location.longitude) if location else None
        logger.debug("geocoded %r -> %s", key, coords)
        return coords
