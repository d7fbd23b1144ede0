"""
IP geolocation and great-circle distance helpers
"""

import asyncio
import logging
import math
from ipaddress import ip_address as parse_ip
from pathlib import Path
from typing import Any, Dict, Optional

import geoip2.database
import geoip2.errors

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres"""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def has_coordinates(location: Optional[Dict[str, Any]]) -> bool:
    return bool(location) and location.get('latitude') is not None and location.get('longitude') is not None


class GeoLocator:
    """GeoIP2 city lookups; private and unknown addresses resolve to None"""

    def __init__(self, geoip_db_path: Optional[str] = None):
        self.geoip_db_path = Path(geoip_db_path) if geoip_db_path else None
        self.reader = None

        if self.geoip_db_path and self.geoip_db_path.exists():
            try:
                self.reader = geoip2.database.Reader(str(self.geoip_db_path))
                logger.info(f"GeoIP database loaded from {self.geoip_db_path}")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load GeoIP database: {e}")
        elif self.geoip_db_path:
            logger.warning(f"GeoIP database not found: {self.geoip_db_path}")

    async def lookup(self, ip: Optional[str]) -> Optional[Dict[str, Any]]:
        if not self.reader or not ip:
            return None
        return await asyncio.to_thread(self._lookup_sync, ip)

    def _lookup_sync(self, ip: str) -> Optional[Dict[str, Any]]:
        try:
            address = parse_ip(ip)
        except ValueError:
            return None

        if address.is_private or address.is_loopback or address.is_link_local:
            return None

        try:
            response = self.reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError) as e:
            logger.debug(f"Geolocation lookup failed for {ip}: {e}")
            return None

        return {
            'country': response.country.iso_code,
            'region': response.subdivisions.most_specific.iso_code,
            'city': response.city.name,
            'latitude': response.location.latitude,
            'longitude': response.location.longitude,
        }

    def close(self) -> None:
        if self.reader:
            self.reader.close()
            self.reader = None
