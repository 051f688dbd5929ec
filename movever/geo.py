from math import radians, cos, sin, asin, sqrt, hypot, inf
from typing import List, Optional, Protocol, Sequence, Tuple
import logging

import httpx

logger = logging.getLogger(__name__)

# Internal coordinate type: (lat, lon)
LatLon = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0


class GeoLookupError(Exception):
    """Geocoding or routing provider could not be reached or answered badly."""


class Geocoder(Protocol):
    async def geocode(self, address: str) -> Optional[LatLon]: ...


class Router(Protocol):
    async def route(self, start: LatLon, end: LatLon) -> Optional[List[LatLon]]: ...


def haversine_km(a: LatLon, b: LatLon) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(sqrt(h))


def point_to_route_km(point: LatLon, route: Sequence[LatLon]) -> float:
    """Shortest distance in km from `point` to the polyline `route`.

    Segments are projected onto a local equirectangular plane centred on the
    point, which is accurate to well under a percent at the tens-of-km scale
    the route-proximity check works at.
    """
    if not route:
        return inf
    if len(route) == 1:
        return haversine_km(point, route[0])

    lat0, lon0 = point
    scale_x = radians(1) * cos(radians(lat0)) * EARTH_RADIUS_KM
    scale_y = radians(1) * EARTH_RADIUS_KM

    def project(p: LatLon) -> Tuple[float, float]:
        return (p[1] - lon0) * scale_x, (p[0] - lat0) * scale_y

    best = inf
    ax, ay = project(route[0])
    for vertex in route[1:]:
        bx, by = project(vertex)
        dx, dy = bx - ax, by - ay
        seg_len2 = dx * dx + dy * dy
        t = 0.0 if seg_len2 == 0 else max(0.0, min(1.0, -(ax * dx + ay * dy) / seg_len2))
        best = min(best, hypot(ax + t * dx, ay + t * dy))
        ax, ay = bx, by
    return best


class HttpGeoResolver:
    """Geocoding via a Nominatim-style /search endpoint and routing via
    an OSRM-style /route endpoint.

    Returns None when the provider answers but has no result; raises
    GeoLookupError when the provider fails.
    """

    def __init__(self, client: httpx.AsyncClient, geocoder_url: str, router_url: str,
                 user_agent: str, timeout: float = 5.0, profile: str = "driving"):
        self.client = client
        self.geocoder_url = geocoder_url.rstrip("/")
        self.router_url = router_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout
        self.profile = profile

    async def geocode(self, address: str) -> Optional[LatLon]:
        try:
            resp = await self.client.get(
                f"{self.geocoder_url}/search",
                params={"q": address, "format": "json", "limit": 1},
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GeoLookupError(f"geocoding failed for {address!r}: {e}") from e

        if not data:
            logger.debug("geocode_miss: address=%s", address)
            return None
        try:
            return (float(data[0]["lat"]), float(data[0]["lon"]))
        except (KeyError, TypeError, ValueError) as e:
            raise GeoLookupError(f"malformed geocoding result for {address!r}") from e

    async def route(self, start: LatLon, end: LatLon) -> Optional[List[LatLon]]:
        # OSRM wants lon,lat
        coords = f"{start[1]},{start[0]};{end[1]},{end[0]}"
        try:
            resp = await self.client.get(
                f"{self.router_url}/route/v1/{self.profile}/{coords}",
                params={"overview": "full", "geometries": "geojson"},
                timeout=self.timeout,
            )
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GeoLookupError(f"routing failed: {e}") from e

        if data.get("code") != "Ok" or not data.get("routes"):
            logger.debug("route_miss: start=%s end=%s code=%s", start, end, data.get("code"))
            return None
        geometry = data["routes"][0].get("geometry") or {}
        return [(lat, lon) for lon, lat in geometry.get("coordinates", [])]
