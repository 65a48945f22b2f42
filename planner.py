"""
Caller-facing operations of the TourMatrix engine.

Every function returns an OperationResult and never raises for business
conditions (missing tour, too few stops, provider outage).  The error
kinds are the contract with the HTTP layer:

    ProviderUnavailable    routing service down; retry later
    PartialComputeFailure  batch finished but some pairs failed (ok=True)
    InsufficientStops      route requested with fewer than 2 routable stops
    RouteUnresolved        no usable route; data carries fallback markers
    EmptyRoute             save attempted before a route exists
    NotFound               unknown tour / property / destination
    InvalidRequest         malformed input
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import categories
import tour_archive
from distance_matrix import compute_missing, query
from filters import export_csv, export_filename, facet_options, filter_distances
from models import DESTINATION, PROPERTY, Location, list_locations, upsert_location
from route_resolver import (
    TOUR_OPTIMIZE_WAYPOINTS,
    InsufficientStops,
    RouteResolution,
    TourRoute,
    check_stops,
    markers_for,
    resolve_or_markers,
)
from routing import (
    GoogleMapsRoutingProvider,
    ProviderUnavailable,
    RouteNotFound,
    RoutingProvider,
)
from tm_trace import timed_stage
from tour_builder import (
    InvalidReorder,
    TourBuilder,
    TourStop,
    UnknownLocation,
    make_catalog,
)

logger = logging.getLogger(__name__)

PROVIDER_UNAVAILABLE = "ProviderUnavailable"
PARTIAL_COMPUTE_FAILURE = "PartialComputeFailure"
INSUFFICIENT_STOPS = "InsufficientStops"
ROUTE_UNRESOLVED = "RouteUnresolved"
EMPTY_ROUTE = "EmptyRoute"
NOT_FOUND = "NotFound"
INVALID_REQUEST = "InvalidRequest"

RETRY_MESSAGE = "Routing provider unavailable, please retry."


@dataclass
class OperationResult:
    ok: bool
    data: Any = None
    error_kind: Optional[str] = None
    message: str = ""

    @classmethod
    def failure(cls, error_kind: str, message: str, data: Any = None) -> "OperationResult":
        return cls(ok=False, data=data, error_kind=error_kind, message=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.ok,
            "data": self.data,
            "error_kind": self.error_kind,
            "message": self.message,
        }


_provider: Optional[RoutingProvider] = None


def get_provider() -> Optional[RoutingProvider]:
    """Process-wide Google provider, or None when no API key is configured."""
    global _provider
    if _provider is None:
        api_key = os.environ.get("GOOGLE_MAPS_API_KEY")
        if not api_key:
            return None
        _provider = GoogleMapsRoutingProvider(api_key)
    return _provider


def _catalog():
    return make_catalog(list_locations())


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------

def sync_locations(
    property_records: Iterable[Mapping[str, Any]] = (),
    destination_records: Iterable[Mapping[str, Any]] = (),
) -> OperationResult:
    """Upsert the engine's copy of property/destination records."""
    try:
        locations = [Location.from_property_record(dict(r)) for r in property_records]
        locations += [Location.from_destination_record(dict(r)) for r in destination_records]
    except (KeyError, TypeError) as e:
        return OperationResult.failure(INVALID_REQUEST, f"Invalid record: {e}")
    for location in locations:
        upsert_location(location)
    logger.info("[locations] synced %d records", len(locations))
    return OperationResult(ok=True, data={"synced": len(locations)})


def list_all_locations(kind: Optional[str] = None) -> OperationResult:
    if kind and kind not in (PROPERTY, DESTINATION):
        return OperationResult.failure(INVALID_REQUEST, f"Unknown location kind: {kind}")
    return OperationResult(ok=True, data=[loc.to_dict() for loc in list_locations(kind)])


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

def normalize_category(raw: Optional[str]) -> OperationResult:
    canonical = categories.normalize(raw)
    return OperationResult(ok=True, data={
        "raw": raw,
        "canonical": canonical,
        "label": categories.label(canonical),
    })


# ---------------------------------------------------------------------------
# Distance matrix
# ---------------------------------------------------------------------------

def compute_missing_distances(
    provider: Optional[RoutingProvider] = None,
    force: bool = False,
    stale_before: Optional[datetime] = None,
) -> OperationResult:
    properties = list_locations(PROPERTY)
    destinations = list_locations(DESTINATION)
    if not properties or not destinations:
        return OperationResult.failure(INVALID_REQUEST, "No properties or destinations found")

    provider = provider or get_provider()
    if provider is None:
        return OperationResult.failure(PROVIDER_UNAVAILABLE, "GOOGLE_MAPS_API_KEY is not configured")

    try:
        summary = timed_stage(
            "compute_missing", compute_missing,
            properties, destinations, provider,
            force=force, stale_before=stale_before,
        )
    except ProviderUnavailable as e:
        logger.warning("[matrix] batch aborted: %s", e)
        return OperationResult.failure(PROVIDER_UNAVAILABLE, RETRY_MESSAGE)

    return OperationResult(
        ok=True,
        data=summary.to_dict(),
        error_kind=summary.error_kind,
        message=summary.message(),
    )


def query_distances(
    property_ids: Iterable[str] = (),
    destination_ids: Iterable[str] = (),
    selected_categories: Iterable[str] = (),
    selected_tags: Iterable[str] = (),
) -> OperationResult:
    rows = query()
    matched = filter_distances(rows, property_ids, destination_ids, selected_categories, selected_tags)
    return OperationResult(ok=True, data={
        "distances": [r.to_dict() for r in matched],
        "total_stored": len(rows),
        "options": facet_options(rows),
    })


def export_distances_csv(
    property_ids: Iterable[str] = (),
    destination_ids: Iterable[str] = (),
    selected_categories: Iterable[str] = (),
    selected_tags: Iterable[str] = (),
) -> OperationResult:
    matched = filter_distances(query(), property_ids, destination_ids, selected_categories, selected_tags)
    if not matched:
        return OperationResult.failure(INVALID_REQUEST, "No distance data to export")
    return OperationResult(ok=True, data={
        "filename": export_filename(),
        "csv": export_csv(matched),
        "rows": len(matched),
    })


# ---------------------------------------------------------------------------
# Tours
# ---------------------------------------------------------------------------

def _starting_point_stop(
    builder: TourBuilder,
    starting_point: Optional[Mapping[str, Any]],
) -> None:
    if not starting_point:
        return
    builder.set_starting_point(
        starting_point.get("kind") or starting_point.get("type"),
        source_id=starting_point.get("id"),
        name=starting_point.get("name") or "",
        address=starting_point.get("address") or "",
        latitude=starting_point.get("latitude"),
        longitude=starting_point.get("longitude"),
    )


def build_tour(
    starting_point: Optional[Mapping[str, Any]] = None,
    property_ids: Sequence[str] = (),
    destination_ids: Sequence[str] = (),
    custom_stops: Sequence[Mapping[str, Any]] = (),
    moves: Sequence[Sequence[int]] = (),
) -> OperationResult:
    """
    Itinerary from selections, then custom stops, then (from, to) moves
    applied in order.
    """
    builder = TourBuilder(_catalog())
    try:
        _starting_point_stop(builder, starting_point)
        for pid in property_ids:
            builder.add_stop("property", pid)
        for did in destination_ids:
            builder.add_stop("destination", did)
        for custom in custom_stops:
            builder.add_custom_stop(
                custom.get("name") or "",
                custom.get("address") or "",
                custom.get("latitude"),
                custom.get("longitude"),
            )
        for from_step, to_step in moves:
            builder.reorder(int(from_step), int(to_step))
    except UnknownLocation as e:
        return OperationResult.failure(NOT_FOUND, str(e))
    except (InvalidReorder, ValueError, TypeError) as e:
        return OperationResult.failure(INVALID_REQUEST, str(e))

    data = builder.to_dict()
    data["needs_geocoding"] = [s.step for s in builder.stops if s.needs_geocoding]
    return OperationResult(ok=True, data=data)


def _parse_stops(stops: Iterable[Mapping[str, Any]]) -> List[TourStop]:
    parsed = [TourStop.from_dict(s) for s in stops]
    for i, stop in enumerate(parsed, 1):
        stop.step = i
    return parsed


def resolve_tour_route(
    stops: Iterable[Mapping[str, Any]],
    provider: Optional[RoutingProvider] = None,
    optimize: Optional[bool] = None,
) -> OperationResult:
    try:
        parsed = _parse_stops(stops)
    except (KeyError, ValueError, TypeError) as e:
        return OperationResult.failure(INVALID_REQUEST, f"Invalid stop: {e}")

    if optimize is None:
        optimize = TOUR_OPTIMIZE_WAYPOINTS
    provider = provider or get_provider()
    try:
        if provider is None:
            check_stops(parsed)
            resolution = RouteResolution(
                route=None,
                markers=markers_for(parsed),
                error_kind=ROUTE_UNRESOLVED,
                message=RETRY_MESSAGE,
            )
        else:
            resolution = timed_stage(
                "resolve_route", resolve_or_markers, parsed, provider, optimize
            )
    except InsufficientStops as e:
        return OperationResult.failure(INSUFFICIENT_STOPS, str(e))

    return OperationResult(
        ok=not resolution.degraded,
        data=resolution.to_dict(),
        error_kind=resolution.error_kind,
        message=resolution.message,
    )


def save_tour(
    name: Optional[str],
    starting_point: Optional[Mapping[str, Any]],
    stops: Iterable[Mapping[str, Any]],
    route: Optional[Mapping[str, Any]],
) -> OperationResult:
    try:
        route_obj = TourRoute.from_dict(route) if route else None
        start = TourStop.from_dict(starting_point) if starting_point else None
        parsed = _parse_stops(stops)
    except (KeyError, ValueError, TypeError) as e:
        return OperationResult.failure(INVALID_REQUEST, f"Invalid tour: {e}")
    try:
        saved = tour_archive.save(name, start, parsed, route_obj)
    except tour_archive.EmptyRoute as e:
        return OperationResult.failure(EMPTY_ROUTE, str(e))
    return OperationResult(ok=True, data=saved.to_dict(), message=f'Tour "{saved.name}" saved')


def list_tours() -> OperationResult:
    return OperationResult(ok=True, data=[t.to_dict() for t in tour_archive.list_tours()])


def load_tour(tour_id: str) -> OperationResult:
    try:
        saved = tour_archive.load(tour_id)
    except tour_archive.TourNotFound as e:
        return OperationResult.failure(NOT_FOUND, str(e))
    builder = tour_archive.restore_builder(saved, _catalog())
    return OperationResult(ok=True, data={
        "tour": saved.to_dict(),
        "builder": builder.to_dict(),
    }, message=f'Tour "{saved.name}" loaded')


def rename_tour(tour_id: str, new_name: str) -> OperationResult:
    try:
        saved = tour_archive.rename(tour_id, new_name)
    except tour_archive.InvalidTourName as e:
        return OperationResult.failure(INVALID_REQUEST, str(e))
    except tour_archive.TourNotFound as e:
        return OperationResult.failure(NOT_FOUND, str(e))
    return OperationResult(ok=True, data=saved.to_dict())


def delete_tour(tour_id: str) -> OperationResult:
    try:
        tour_archive.delete(tour_id)
    except tour_archive.TourNotFound as e:
        return OperationResult.failure(NOT_FOUND, str(e))
    return OperationResult(ok=True, data={"id": tour_id})


# ---------------------------------------------------------------------------
# Geocoding (custom stops)
# ---------------------------------------------------------------------------

def geocode_address(address: str, provider: Optional[RoutingProvider] = None) -> OperationResult:
    address = (address or "").strip()
    if not address:
        return OperationResult.failure(INVALID_REQUEST, "address is required")
    provider = provider or get_provider()
    if provider is None or not hasattr(provider, "geocode"):
        return OperationResult.failure(PROVIDER_UNAVAILABLE, "Geocoding is not configured")
    try:
        lat, lng = provider.geocode(address)
    except ProviderUnavailable:
        return OperationResult.failure(PROVIDER_UNAVAILABLE, RETRY_MESSAGE)
    except RouteNotFound as e:
        return OperationResult.failure(NOT_FOUND, f"Address not found: {e}")
    return OperationResult(ok=True, data={"address": address, "latitude": lat, "longitude": lng})
