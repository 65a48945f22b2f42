"""
Tour itinerary assembly.

A tour is a starting point (step 1, fixed) followed by a permutable tail
of properties, destinations and free-form custom stops.  TourBuilder is
the session-scoped itinerary object: the HTTP layer rebuilds one per
request from the client's state, the archive restores one from a saved
snapshot.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from categories import label as category_label, normalize
from models import Location

logger = logging.getLogger(__name__)


class StopKind(Enum):
    PROPERTY = "property"
    DESTINATION = "destination"
    CUSTOM = "custom"


class UnknownLocation(LookupError):
    """A stop references a property/destination id that is not in the catalog."""


class InvalidReorder(ValueError):
    """Reorder indices out of range or touching the starting point."""


# (kind value, id) -> Location
Catalog = Mapping[Tuple[str, str], Location]


def make_catalog(locations: Iterable[Location]) -> Dict[Tuple[str, str], Location]:
    return {(loc.kind, loc.id): loc for loc in locations}


@dataclass
class TourStop:
    """One stop of an itinerary.  source_id is None for custom stops."""
    kind: StopKind
    name: str
    address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    source_id: Optional[str] = None
    category: str = ""
    step: int = 0

    @property
    def key(self) -> Optional[Tuple[StopKind, str]]:
        """Identity used for de-duplication; custom stops have none."""
        if self.kind is StopKind.CUSTOM:
            return None
        return (self.kind, self.source_id)

    @property
    def coordinates(self) -> Optional[Tuple[float, float]]:
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)

    @property
    def needs_geocoding(self) -> bool:
        return self.kind is StopKind.CUSTOM and self.coordinates is None

    def display_type(self) -> str:
        if self.kind is StopKind.PROPERTY:
            return self.category or "Property"
        if self.kind is StopKind.DESTINATION:
            return category_label(normalize(self.category))
        if self.kind is StopKind.CUSTOM:
            return "Custom Location"
        raise ValueError(f"Unhandled stop kind: {self.kind!r}")

    @classmethod
    def from_location(cls, location: Location) -> "TourStop":
        return cls(
            kind=StopKind(location.kind),
            name=location.name,
            address=location.address,
            latitude=location.latitude,
            longitude=location.longitude,
            source_id=location.id,
            category=location.category,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "kind": self.kind.value,
            "id": self.source_id,
            "name": self.name,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "category": self.category,
            "display_type": self.display_type(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TourStop":
        kind = StopKind(data.get("kind") or data.get("type"))
        source_id = data.get("id")
        return cls(
            kind=kind,
            name=data.get("name") or "",
            address=data.get("address") or "",
            latitude=_coordinate(data.get("latitude")),
            longitude=_coordinate(data.get("longitude")),
            source_id=None if kind is StopKind.CUSTOM else (str(source_id) if source_id is not None else None),
            category=data.get("category") or "",
            step=int(data.get("step") or 0),
        )


def _coordinate(value):
    return None if value is None or value == "" else float(value)


def _renumber(stops: List[TourStop]) -> List[TourStop]:
    for i, stop in enumerate(stops, 1):
        stop.step = i
    return stops


def build_stops(
    starting_point: Optional[TourStop],
    property_ids: Iterable[str],
    destination_ids: Iterable[str],
    catalog: Catalog,
) -> List[TourStop]:
    """
    Deterministic itinerary from selections: starting point, then the
    selected properties, then the selected destinations, each in selection
    order.  The starting point is never listed twice; ids missing from the
    catalog are skipped.
    """
    stops: List[TourStop] = []
    seen = set()
    if starting_point is not None:
        stops.append(starting_point)
        if starting_point.key:
            seen.add(starting_point.key)

    for kind, ids in ((StopKind.PROPERTY, property_ids), (StopKind.DESTINATION, destination_ids)):
        for source_id in ids:
            if (kind, source_id) in seen:
                continue
            location = catalog.get((kind.value, source_id))
            if location is None:
                logger.debug("[tour] %s %s not in catalog, skipped", kind.value, source_id)
                continue
            seen.add((kind, source_id))
            stops.append(TourStop.from_location(location))
    return _renumber(stops)


class TourBuilder:
    """Mutable itinerary: a fixed starting point plus a reorderable tail."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog
        self.starting_point: Optional[TourStop] = None
        self._tail: List[TourStop] = []

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @property
    def stops(self) -> List[TourStop]:
        """Rendered itinerary, renumbered 1..N.

        A tail stop that duplicates the starting point stays selected but
        is not rendered.
        """
        rendered: List[TourStop] = []
        start_key = None
        if self.starting_point is not None:
            rendered.append(self.starting_point)
            start_key = self.starting_point.key
        rendered.extend(s for s in self._tail if s.key is None or s.key != start_key)
        return _renumber(rendered)

    @property
    def property_ids(self) -> List[str]:
        return [s.source_id for s in self._tail if s.kind is StopKind.PROPERTY]

    @property
    def destination_ids(self) -> List[str]:
        return [s.source_id for s in self._tail if s.kind is StopKind.DESTINATION]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "starting_point": self.starting_point.to_dict() if self.starting_point else None,
            "stops": [s.to_dict() for s in self.stops],
            "property_ids": self.property_ids,
            "destination_ids": self.destination_ids,
        }

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _lookup(self, kind: StopKind, source_id: str) -> TourStop:
        location = self.catalog.get((kind.value, source_id))
        if location is None:
            raise UnknownLocation(f"Unknown {kind.value}: {source_id}")
        return TourStop.from_location(location)

    def set_starting_point(
        self,
        kind,
        source_id: Optional[str] = None,
        name: str = "",
        address: str = "",
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> List[TourStop]:
        """Replace step 1.  Custom starting points may lack coordinates
        until set_custom_coordinates() supplies the geocoded position."""
        kind = StopKind(kind)
        if kind is StopKind.CUSTOM:
            self.starting_point = TourStop(
                kind=kind,
                name=name or address or "Custom Starting Point",
                address=address,
                latitude=latitude,
                longitude=longitude,
            )
        else:
            self.starting_point = self._lookup(kind, source_id)
        return self.stops

    def add_stop(self, kind, source_id: str) -> List[TourStop]:
        """Append a property/destination to the tail; re-adding is a no-op."""
        kind = StopKind(kind)
        if kind is StopKind.CUSTOM:
            raise ValueError("Custom stops are added with add_custom_stop()")
        if any(s.key == (kind, source_id) for s in self._tail):
            return self.stops
        self._tail.append(self._lookup(kind, source_id))
        return self.stops

    def add_custom_stop(
        self,
        name: str,
        address: str = "",
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> List[TourStop]:
        self._tail.append(TourStop(
            kind=StopKind.CUSTOM,
            name=name or address or "Custom Stop",
            address=address,
            latitude=latitude,
            longitude=longitude,
        ))
        return self.stops

    def remove_stop(self, kind, source_id: str) -> bool:
        """Drop a property/destination from the tail.  False if absent."""
        key = (StopKind(kind), source_id)
        before = len(self._tail)
        self._tail = [s for s in self._tail if s.key != key]
        return len(self._tail) < before

    def remove_step(self, step: int) -> TourStop:
        """Drop the rendered stop at `step` (2..N), custom stops included."""
        stops = self.stops
        if not 2 <= step <= len(stops):
            raise InvalidReorder(f"Step {step} cannot be removed")
        target = stops[step - 1]
        self._tail = [s for s in self._tail if s is not target]
        return target

    def set_custom_coordinates(self, step: int, latitude: float, longitude: float) -> TourStop:
        stops = self.stops
        if not 1 <= step <= len(stops):
            raise InvalidReorder(f"No step {step}")
        stop = stops[step - 1]
        if stop.kind is not StopKind.CUSTOM:
            raise ValueError(f"Step {step} is a {stop.kind.value}, not a custom stop")
        stop.latitude = latitude
        stop.longitude = longitude
        return stop

    def reorder(self, from_step: int, to_step: int) -> List[TourStop]:
        """
        Move the stop at from_step so it becomes step to_step.

        Remove-then-insert: the drop slot sits after the target when moving
        forward and before it when moving back; a forward slot shifts left
        by one once the moved stop is taken out.  Step 1 is never movable
        and nothing can be dropped in front of it.
        """
        stops = self.stops
        n = len(stops)
        if not 2 <= from_step <= n or not 2 <= to_step <= n:
            raise InvalidReorder(
                f"Cannot move step {from_step} to {to_step} in a {n}-stop tour"
            )
        if from_step == to_step:
            return stops

        rendered_ids = {id(s) for s in stops}
        hidden = [s for s in self._tail if id(s) not in rendered_ids]

        src = from_step - 1
        slot = to_step if from_step < to_step else to_step - 1
        moved = stops.pop(src)
        if src < slot:
            slot -= 1
        stops.insert(slot, moved)

        self._tail = (stops[1:] if self.starting_point is not None else stops) + hidden
        return self.stops

    def reset(self) -> None:
        self.starting_point = None
        self._tail = []

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @classmethod
    def from_selections(
        cls,
        catalog: Catalog,
        starting_point: Optional[TourStop],
        property_ids: Iterable[str],
        destination_ids: Iterable[str],
    ) -> "TourBuilder":
        builder = cls(catalog)
        stops = build_stops(starting_point, property_ids, destination_ids, catalog)
        builder.starting_point = starting_point
        builder._tail = stops[1:] if starting_point is not None else stops
        return builder

    @classmethod
    def from_snapshot(
        cls,
        catalog: Catalog,
        starting_point: Optional[Mapping[str, Any]],
        stops: Iterable[Mapping[str, Any]],
    ) -> "TourBuilder":
        """Rebuild from archived dicts, keeping the archived stop order."""
        builder = cls(catalog)
        restored = sorted((TourStop.from_dict(s) for s in stops), key=lambda s: s.step)
        if starting_point:
            builder.starting_point = TourStop.from_dict(starting_point)
        elif restored:
            builder.starting_point = restored[0]
        if builder.starting_point is not None and restored:
            first = restored[0]
            if first.kind is builder.starting_point.kind and first.key == builder.starting_point.key:
                restored = restored[1:]
        builder._tail = restored
        return builder
