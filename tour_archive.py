"""
Named tour snapshots: save, list, load, rename, delete.

A saved tour freezes the starting point, the rendered stops and the
resolved route at save time.  Tours never expire; they go away only
through delete().
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import models
from route_resolver import TourRoute
from tour_builder import Catalog, TourBuilder, TourStop

logger = logging.getLogger(__name__)


class EmptyRoute(ValueError):
    """Save attempted before a route with at least one leg exists."""


class TourNotFound(LookupError):
    """No saved tour with this id."""


class InvalidTourName(ValueError):
    """Blank tour name on rename."""


@dataclass
class SavedTour:
    id: str
    name: str
    starting_point: Optional[Dict[str, Any]]
    stops: List[Dict[str, Any]]
    route: Dict[str, Any]
    created_at: str

    @property
    def resolved_route(self) -> TourRoute:
        return TourRoute.from_dict(self.route)

    @property
    def property_ids(self) -> List[str]:
        return [s["id"] for s in self.stops if s.get("kind") == "property" and s.get("id")]

    @property
    def destination_ids(self) -> List[str]:
        return [s["id"] for s in self.stops if s.get("kind") == "destination" and s.get("id")]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "starting_point": self.starting_point,
            "stops": self.stops,
            "route": self.route,
            "created_at": self.created_at,
            "property_ids": self.property_ids,
            "destination_ids": self.destination_ids,
        }


def _from_row(row: Mapping[str, Any]) -> SavedTour:
    return SavedTour(
        id=row["tour_id"],
        name=row["name"],
        starting_point=row["starting_point"],
        stops=row["stops"],
        route=row["route"],
        created_at=row["created_at"],
    )


def save(
    name: Optional[str],
    starting_point: Optional[TourStop],
    stops: Sequence[TourStop],
    route: Optional[TourRoute],
) -> SavedTour:
    """Archive a resolved tour.  A blank name becomes "Tour N"."""
    if route is None or len(route.legs) < 1:
        raise EmptyRoute("Calculate a tour route before saving")
    name = (name or "").strip() or f"Tour {models.count_tours() + 1}"
    row = models.create_tour(
        name,
        starting_point.to_dict() if starting_point else None,
        [s.to_dict() for s in stops],
        route.to_dict(),
    )
    logger.info("[archive] saved tour %s (%r, %d legs)", row["tour_id"], name, len(route.legs))
    return _from_row(row)


def list_tours() -> List[SavedTour]:
    """Newest first."""
    return [_from_row(r) for r in models.list_tours()]


def load(tour_id: str) -> SavedTour:
    row = models.get_tour(tour_id)
    if row is None:
        raise TourNotFound(f"Tour not found: {tour_id}")
    return _from_row(row)


def rename(tour_id: str, new_name: str) -> SavedTour:
    new_name = (new_name or "").strip()
    if not new_name:
        raise InvalidTourName("Tour name is required")
    if not models.rename_tour(tour_id, new_name):
        raise TourNotFound(f"Tour not found: {tour_id}")
    logger.info("[archive] renamed tour %s to %r", tour_id, new_name)
    return load(tour_id)


def delete(tour_id: str) -> None:
    if not models.delete_tour(tour_id):
        raise TourNotFound(f"Tour not found: {tour_id}")
    logger.info("[archive] deleted tour %s", tour_id)


def restore_builder(saved: SavedTour, catalog: Catalog) -> TourBuilder:
    """Itinerary state for a loaded tour (selection ids come from stop kinds)."""
    return TourBuilder.from_snapshot(catalog, saved.starting_point, saved.stops)
