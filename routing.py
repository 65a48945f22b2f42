"""
Routing provider interface and the Google Maps implementation.

The engine never talks to Google directly: the distance matrix and the
route resolver both depend on RoutingProvider.route(), a single method
that turns an origin, a destination and optional waypoints into per-leg
metrics for each requested travel mode. Tests substitute a fake provider
that returns deterministic legs.

Error model:
  - ProviderUnavailable: network failure, timeout, auth or quota errors.
    Nothing useful can be computed until the provider recovers.
  - RouteNotFound: the provider answered but has no usable route
    (ZERO_RESULTS, NOT_FOUND, malformed payload).
"""

import math
import os
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import requests
from dotenv import load_dotenv

from tm_trace import get_trace

load_dotenv()

logger = logging.getLogger(__name__)

LatLng = Tuple[float, float]

TRAVEL_MODES = ("driving", "walking", "transit")
DEFAULT_MODES = TRAVEL_MODES

# Per-call timeout in seconds.  A timeout is handled exactly like any other
# provider outage.
ROUTING_TIMEOUT_SECONDS = float(os.environ.get("ROUTING_TIMEOUT_SECONDS", "10"))


# =============================================================================
# ERRORS
# =============================================================================

class ProviderError(Exception):
    """Base class for routing provider failures."""

    def __init__(self, message: str, status: str = ""):
        super().__init__(message)
        self.status = status


class ProviderUnavailable(ProviderError):
    """Provider unreachable or refusing requests (network, auth, quota)."""


class RouteNotFound(ProviderError):
    """Provider reachable but returned no usable route."""


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class LegMetrics:
    """Distance (meters) and duration (seconds) for one leg in one mode."""
    distance_m: Optional[float]
    duration_s: Optional[float]


@dataclass
class RouteLegs:
    """Provider answer for a chained request.

    legs[i] maps travel mode -> LegMetrics (None when the mode has no route
    for that leg).  waypoint_order[i] is the index into the caller's
    waypoint list of the i-th visited waypoint.
    """
    legs: List[Dict[str, Optional[LegMetrics]]]
    waypoint_order: List[int] = field(default_factory=list)


# =============================================================================
# INTERFACE
# =============================================================================

class RoutingProvider(ABC):
    """Narrow interface the engine uses for all routing work."""

    @abstractmethod
    def route(
        self,
        origin: LatLng,
        destination: LatLng,
        waypoints: Sequence[LatLng] = (),
        modes: Sequence[str] = DEFAULT_MODES,
        optimize: bool = False,
    ) -> RouteLegs:
        """Resolve origin -> waypoints -> destination.

        Returns one leg per consecutive pair of points in visiting order.
        With optimize=True the provider may permute the waypoints (never
        the origin or destination) and reports the permutation in
        RouteLegs.waypoint_order.

        Raises ProviderUnavailable or RouteNotFound.
        """


# =============================================================================
# GEOMETRY HELPERS
# =============================================================================

def valid_coordinates(lat: Optional[float], lng: Optional[float]) -> bool:
    """True when lat/lng are real numbers inside the WGS84 ranges."""
    if lat is None or lng is None:
        return False
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def haversine_meters(origin: LatLng, dest: LatLng) -> float:
    """Straight-line distance in meters."""
    R = 6371000  # Earth's radius in meters
    lat1, lon1 = math.radians(origin[0]), math.radians(origin[1])
    lat2, lon2 = math.radians(dest[0]), math.radians(dest[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))

    return R * c


def _latlng_param(point: LatLng) -> str:
    return f"{point[0]},{point[1]}"


# =============================================================================
# GOOGLE MAPS
# =============================================================================

class GoogleMapsRoutingProvider(RoutingProvider):
    """RoutingProvider backed by the Google Maps web services."""

    DEFAULT_TIMEOUT = ROUTING_TIMEOUT_SECONDS

    # Distance Matrix allows 100 elements per request.  Legs are read off the
    # diagonal of an N x N request, so 10 legs per call stays within limits.
    DISTANCE_MATRIX_MAX_LEGS = 10

    # Top-level statuses that mean "provider down for us", not "no route".
    UNAVAILABLE_STATUSES = frozenset({
        "REQUEST_DENIED",
        "OVER_QUERY_LIMIT",
        "OVER_DAILY_LIMIT",
        "UNKNOWN_ERROR",
    })
    UNAVAILABLE_HTTP_CODES = frozenset({401, 403, 429})

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with trace recording and transport error mapping."""
        t0 = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.DEFAULT_TIMEOUT)
        except requests.exceptions.RequestException as e:
            logger.warning("[routing] %s request failed: %s", endpoint_name, e)
            raise ProviderUnavailable(f"{endpoint_name} request failed: {e}") from e
        elapsed_ms = int((time.time() - t0) * 1000)

        try:
            data = response.json()
        except ValueError:
            data = {}
        provider_status = data.get("status", "") if isinstance(data, dict) else ""

        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="google_maps",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )

        if response.status_code >= 500 or response.status_code in self.UNAVAILABLE_HTTP_CODES:
            raise ProviderUnavailable(
                f"{endpoint_name} HTTP {response.status_code}",
                status=provider_status,
            )
        if not isinstance(data, dict) or not provider_status:
            raise RouteNotFound(f"{endpoint_name} returned an unreadable response")
        return data

    def _check_status(self, data: dict, api_name: str) -> None:
        status = data.get("status", "")
        if status == "OK":
            return
        if status in self.UNAVAILABLE_STATUSES:
            raise ProviderUnavailable(f"{api_name} failed: {status}", status=status)
        raise RouteNotFound(f"{api_name} failed: {status}", status=status)

    # ------------------------------------------------------------------
    # RoutingProvider
    # ------------------------------------------------------------------

    def route(
        self,
        origin: LatLng,
        destination: LatLng,
        waypoints: Sequence[LatLng] = (),
        modes: Sequence[str] = DEFAULT_MODES,
        optimize: bool = False,
    ) -> RouteLegs:
        waypoints = list(waypoints)
        order = list(range(len(waypoints)))
        if optimize and len(waypoints) >= 2:
            order = self._optimized_waypoint_order(origin, destination, waypoints)

        points = [origin] + [waypoints[i] for i in order] + [destination]
        pairs = list(zip(points[:-1], points[1:]))
        legs: List[Dict[str, Optional[LegMetrics]]] = [{} for _ in pairs]
        for mode in modes:
            for leg, metrics in zip(legs, self._leg_metrics(pairs, mode)):
                leg[mode] = metrics
        return RouteLegs(legs=legs, waypoint_order=order)

    def _optimized_waypoint_order(
        self,
        origin: LatLng,
        destination: LatLng,
        waypoints: List[LatLng],
    ) -> List[int]:
        """Ask the Directions API to reorder intermediate stops (driving)."""
        url = f"{self.base_url}/directions/json"
        params = {
            "origin": _latlng_param(origin),
            "destination": _latlng_param(destination),
            "waypoints": "optimize:true|" + "|".join(_latlng_param(w) for w in waypoints),
            "mode": "driving",
            "key": self.api_key,
        }
        data = self._traced_get("directions", url, params)
        self._check_status(data, "Directions API")

        routes = data.get("routes") or []
        if not routes:
            raise RouteNotFound("Directions API returned no routes", status="ZERO_RESULTS")
        order = routes[0].get("waypoint_order")
        if order is None:
            return list(range(len(waypoints)))
        return [int(i) for i in order]

    def _leg_metrics(
        self,
        pairs: List[Tuple[LatLng, LatLng]],
        mode: str,
    ) -> List[Optional[LegMetrics]]:
        """
        Distance/duration for each (start, end) pair in one travel mode.
        Batches pairs into Distance Matrix requests and reads the diagonal.
        Returns None for a leg the provider cannot route in this mode.
        """
        results: List[Optional[LegMetrics]] = []
        url = f"{self.base_url}/distancematrix/json"
        for i in range(0, len(pairs), self.DISTANCE_MATRIX_MAX_LEGS):
            chunk = pairs[i : i + self.DISTANCE_MATRIX_MAX_LEGS]
            params = {
                "origins": "|".join(_latlng_param(start) for start, _ in chunk),
                "destinations": "|".join(_latlng_param(end) for _, end in chunk),
                "mode": mode,
                "units": "metric",
                "key": self.api_key,
            }
            data = self._traced_get("distance_matrix", url, params)
            self._check_status(data, "Distance Matrix API")
            try:
                for j in range(len(chunk)):
                    elem = data["rows"][j]["elements"][j]
                    if elem.get("status") != "OK":
                        results.append(None)
                        continue
                    results.append(LegMetrics(
                        distance_m=elem["distance"]["value"],
                        duration_s=elem["duration"]["value"],
                    ))
            except (KeyError, IndexError, TypeError) as e:
                raise RouteNotFound(f"Distance Matrix API response malformed: {e}") from e
        return results

    # ------------------------------------------------------------------
    # Geocoding (custom tour stops)
    # ------------------------------------------------------------------

    def geocode(self, address: str) -> LatLng:
        """Convert a free-text address to lat/lng coordinates."""
        url = f"{self.base_url}/geocode/json"
        params = {"address": address, "key": self.api_key}
        data = self._traced_get("geocode", url, params)
        self._check_status(data, "Geocoding")

        results = data.get("results") or []
        if not results:
            raise RouteNotFound("Geocoding returned no results", status="ZERO_RESULTS")
        location = results[0]["geometry"]["location"]
        return location["lat"], location["lng"]
