"""
Resolve an ordered itinerary into per-leg travel metrics.

One provider call per itinerary: origin = step 1, destination = step N,
everything in between goes as waypoints.  With optimization on (and at
least two waypoints) the provider may reorder the waypoints, never the
endpoints.

Provider trouble is not a crash for the planner page.  resolve() raises
RouteUnresolved; resolve_or_markers() turns that into a degraded
RouteResolution carrying one static marker per stop and no legs.
"""

import os
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from distance_matrix import format_distance, format_duration_seconds
from routing import (
    DEFAULT_MODES,
    LegMetrics,
    ProviderError,
    ProviderUnavailable,
    RoutingProvider,
    haversine_meters,
    valid_coordinates,
)
from tour_builder import TourStop

logger = logging.getLogger(__name__)

# Ask the provider to reorder intermediate stops unless disabled.
TOUR_OPTIMIZE_WAYPOINTS = os.environ.get("TOUR_OPTIMIZE_WAYPOINTS", "true").lower() == "true"


class InsufficientStops(ValueError):
    """Fewer than two routable stops."""


class RouteUnresolved(Exception):
    """The provider could not produce a usable route for the itinerary."""

    def __init__(self, message: str, provider_unavailable: bool = False):
        super().__init__(message)
        self.provider_unavailable = provider_unavailable


# =============================================================================
# DATA CLASSES
# =============================================================================

def _metrics_dict(metrics: Optional[LegMetrics]) -> Optional[Dict[str, Any]]:
    if metrics is None:
        return None
    return {"distance_m": metrics.distance_m, "duration_s": metrics.duration_s}


def _metrics_from(data: Optional[Mapping[str, Any]]) -> Optional[LegMetrics]:
    if not data:
        return None
    return LegMetrics(distance_m=data.get("distance_m"), duration_s=data.get("duration_s"))


@dataclass(frozen=True)
class TourLeg:
    """Travel between two consecutive stops."""
    from_step: int
    to_step: int
    from_name: str
    to_name: str
    driving: Optional[LegMetrics] = None
    walking: Optional[LegMetrics] = None
    transit: Optional[LegMetrics] = None

    def metric(self, mode: str) -> Optional[LegMetrics]:
        return getattr(self, mode)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "from_step": self.from_step,
            "to_step": self.to_step,
            "from_name": self.from_name,
            "to_name": self.to_name,
        }
        for mode in ("driving", "walking", "transit"):
            metrics = self.metric(mode)
            data[mode] = _metrics_dict(metrics)
            data[f"{mode}_duration_text"] = format_duration_seconds(
                metrics.duration_s if metrics else None
            )
        data["distance_text"] = format_distance(self.driving.distance_m if self.driving else None)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TourLeg":
        return cls(
            from_step=int(data["from_step"]),
            to_step=int(data["to_step"]),
            from_name=data.get("from_name", ""),
            to_name=data.get("to_name", ""),
            driving=_metrics_from(data.get("driving")),
            walking=_metrics_from(data.get("walking")),
            transit=_metrics_from(data.get("transit")),
        )


@dataclass(frozen=True)
class TourRoute:
    """Resolved itinerary.  Immutable; changing stops means resolving again."""
    stops: Tuple[TourStop, ...]
    legs: Tuple[TourLeg, ...]
    optimized: bool = False
    waypoint_order: Tuple[int, ...] = ()

    def total_distance_m(self, mode: str = "driving") -> Optional[float]:
        values = [leg.metric(mode) for leg in self.legs]
        if not values or any(v is None or v.distance_m is None for v in values):
            return None
        return sum(v.distance_m for v in values)

    def total_duration_s(self, mode: str = "driving") -> Optional[float]:
        """Sum over legs, or None when any leg lacks this mode."""
        values = [leg.metric(mode) for leg in self.legs]
        if not values or any(v is None or v.duration_s is None for v in values):
            return None
        return sum(v.duration_s for v in values)

    def to_dict(self) -> Dict[str, Any]:
        totals: Dict[str, Any] = {
            "distance_m": self.total_distance_m(),
            "distance_text": format_distance(self.total_distance_m()),
        }
        for mode in ("driving", "walking", "transit"):
            total = self.total_duration_s(mode)
            totals[f"{mode}_duration_s"] = total
            totals[f"{mode}_duration_text"] = format_duration_seconds(total)
        return {
            "stops": [s.to_dict() for s in self.stops],
            "legs": [leg.to_dict() for leg in self.legs],
            "totals": totals,
            "optimized": self.optimized,
            "waypoint_order": list(self.waypoint_order),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TourRoute":
        return cls(
            stops=tuple(TourStop.from_dict(s) for s in data.get("stops") or []),
            legs=tuple(TourLeg.from_dict(leg) for leg in data.get("legs") or []),
            optimized=bool(data.get("optimized")),
            waypoint_order=tuple(int(i) for i in data.get("waypoint_order") or []),
        )


@dataclass
class RouteResolution:
    """resolve_or_markers() result: a route, or markers in degraded mode."""
    route: Optional[TourRoute]
    markers: List[Dict[str, Any]] = field(default_factory=list)
    error_kind: Optional[str] = None
    message: str = ""

    @property
    def degraded(self) -> bool:
        return self.route is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "route": self.route.to_dict() if self.route else None,
            "degraded": self.degraded,
            "markers": self.markers,
            "error_kind": self.error_kind,
            "message": self.message,
        }


# =============================================================================
# RESOLUTION
# =============================================================================

def check_stops(stops: Sequence[TourStop]) -> None:
    if len(stops) < 2:
        raise InsufficientStops("At least 2 stops required")
    unroutable = [
        s.step or i
        for i, s in enumerate(stops, 1)
        if not valid_coordinates(s.latitude, s.longitude)
    ]
    if unroutable:
        raise InsufficientStops(
            f"Stops without valid coordinates: {', '.join(str(n) for n in unroutable)}"
        )


def resolve(
    stops: Sequence[TourStop],
    provider: RoutingProvider,
    optimize: bool = TOUR_OPTIMIZE_WAYPOINTS,
    modes: Sequence[str] = DEFAULT_MODES,
) -> TourRoute:
    """
    Resolve stops (in the given order) into a TourRoute.

    Raises InsufficientStops for fewer than two stops or stops without
    coordinates, RouteUnresolved for any provider failure or an answer
    that does not fit the itinerary.
    """
    check_stops(stops)
    modes = tuple(modes)
    middle = list(stops[1:-1])
    use_optimize = bool(optimize) and len(middle) >= 2

    try:
        result = provider.route(
            stops[0].coordinates,
            stops[-1].coordinates,
            [s.coordinates for s in middle],
            modes,
            use_optimize,
        )
    except ProviderError as e:
        logger.warning("[route] provider failed for %d stops: %s", len(stops), e)
        raise RouteUnresolved(str(e), provider_unavailable=isinstance(e, ProviderUnavailable)) from e

    identity = list(range(len(middle)))
    order = list(result.waypoint_order) if result.waypoint_order else identity
    if sorted(order) != identity:
        raise RouteUnresolved(f"Provider returned an invalid waypoint order: {order}")
    if not use_optimize and order != identity:
        raise RouteUnresolved("Provider reordered waypoints without being asked")

    visit = [stops[0]] + [middle[i] for i in order] + [stops[-1]]
    if len(result.legs) != len(visit) - 1:
        raise RouteUnresolved(
            f"Provider returned {len(result.legs)} legs for {len(visit)} stops"
        )
    primary = modes[0]
    for i, leg in enumerate(result.legs, 1):
        if leg.get(primary) is None:
            raise RouteUnresolved(f"No {primary} route between steps {i} and {i + 1}")

    ordered = tuple(replace(stop, step=i) for i, stop in enumerate(visit, 1))
    legs = tuple(
        TourLeg(
            from_step=i + 1,
            to_step=i + 2,
            from_name=ordered[i].name,
            to_name=ordered[i + 1].name,
            driving=leg.get("driving"),
            walking=leg.get("walking"),
            transit=leg.get("transit"),
        )
        for i, leg in enumerate(result.legs)
    )
    route = TourRoute(
        stops=ordered,
        legs=legs,
        optimized=use_optimize and order != identity,
        waypoint_order=tuple(order),
    )
    logger.info(
        "[route] resolved %d stops, %d legs, optimized=%s",
        len(ordered), len(legs), route.optimized,
    )
    return route


def markers_for(stops: Sequence[TourStop]) -> List[Dict[str, Any]]:
    """Static map markers for every stop with coordinates, no legs."""
    markers = []
    previous = None
    for i, stop in enumerate(stops, 1):
        if not valid_coordinates(stop.latitude, stop.longitude):
            continue
        markers.append({
            "step": stop.step or i,
            "kind": stop.kind.value,
            "name": stop.name,
            "address": stop.address,
            "latitude": stop.latitude,
            "longitude": stop.longitude,
            "straight_line_m": (
                round(haversine_meters(previous, stop.coordinates)) if previous else None
            ),
        })
        previous = stop.coordinates
    return markers


def resolve_or_markers(
    stops: Sequence[TourStop],
    provider: RoutingProvider,
    optimize: bool = TOUR_OPTIMIZE_WAYPOINTS,
    modes: Sequence[str] = DEFAULT_MODES,
) -> RouteResolution:
    """resolve(), degrading to static markers when the route is unresolved.

    InsufficientStops still propagates: there is nothing to fall back to.
    """
    try:
        return RouteResolution(route=resolve(stops, provider, optimize, modes))
    except RouteUnresolved as e:
        message = (
            "Routing provider unavailable, please retry."
            if e.provider_unavailable
            else "No route found; showing stops as markers."
        )
        return RouteResolution(
            route=None,
            markers=markers_for(stops),
            error_kind="RouteUnresolved",
            message=message,
        )
