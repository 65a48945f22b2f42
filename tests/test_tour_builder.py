"""Tests for tour itinerary assembly and reordering."""

from collections import Counter

import pytest

from models import Location
from tour_builder import (
    InvalidReorder,
    StopKind,
    TourBuilder,
    TourStop,
    UnknownLocation,
    build_stops,
    make_catalog,
)


def _catalog():
    locations = [
        Location(id=f"S{i}", kind="property", name=f"S{i}", latitude=40.0 + i / 100, longitude=-74.0,
                 category="Condo")
        for i in range(1, 6)
    ]
    locations += [
        Location(id="D1", kind="destination", name="JFK", latitude=40.64, longitude=-73.78,
                 category="International Airports"),
        Location(id="D2", kind="destination", name="Joe's Pizza", latitude=40.73, longitude=-73.99,
                 category="Restaurants"),
    ]
    return make_catalog(locations)


def _five_stop_builder():
    builder = TourBuilder(_catalog())
    builder.set_starting_point("property", "S1")
    for i in range(2, 6):
        builder.add_stop("property", f"S{i}")
    return builder


def _names(stops):
    return [s.name for s in stops]


# =============================================================================
# build_stops
# =============================================================================

class TestBuildStops:

    def test_start_then_properties_then_destinations(self):
        catalog = _catalog()
        start = TourStop.from_location(catalog[("property", "S1")])
        stops = build_stops(start, ["S3", "S2"], ["D2", "D1"], catalog)
        assert _names(stops) == ["S1", "S3", "S2", "Joe's Pizza", "JFK"]
        assert [s.step for s in stops] == [1, 2, 3, 4, 5]

    def test_start_not_listed_twice(self):
        catalog = _catalog()
        start = TourStop.from_location(catalog[("property", "S1")])
        stops = build_stops(start, ["S1", "S2"], [], catalog)
        assert _names(stops) == ["S1", "S2"]

    def test_unknown_ids_skipped(self):
        stops = build_stops(None, ["S2", "NOPE"], ["D9"], _catalog())
        assert _names(stops) == ["S2"]

    def test_deterministic(self):
        catalog = _catalog()
        a = build_stops(None, ["S2", "S3"], ["D1"], catalog)
        b = build_stops(None, ["S2", "S3"], ["D1"], catalog)
        assert [s.to_dict() for s in a] == [s.to_dict() for s in b]


# =============================================================================
# TourBuilder mutations
# =============================================================================

class TestTourBuilder:

    def test_add_stop_is_idempotent(self):
        builder = _five_stop_builder()
        builder.add_stop("property", "S3")
        assert len(builder.stops) == 5

    def test_unknown_location(self):
        builder = TourBuilder(_catalog())
        with pytest.raises(UnknownLocation):
            builder.add_stop("destination", "D9")
        with pytest.raises(UnknownLocation):
            builder.set_starting_point("property", "NOPE")

    def test_custom_stop_via_add_stop_rejected(self):
        with pytest.raises(ValueError):
            TourBuilder(_catalog()).add_stop("custom", "x")

    def test_duplicate_of_start_is_hidden_but_selected(self):
        builder = TourBuilder(_catalog())
        builder.add_stop("property", "S1")
        builder.add_stop("property", "S2")
        builder.set_starting_point("property", "S1")
        assert _names(builder.stops) == ["S1", "S2"]
        assert builder.property_ids == ["S1", "S2"]

    def test_remove_stop(self):
        builder = _five_stop_builder()
        assert builder.remove_stop("property", "S3") is True
        assert builder.remove_stop("property", "S3") is False
        assert _names(builder.stops) == ["S1", "S2", "S4", "S5"]
        assert [s.step for s in builder.stops] == [1, 2, 3, 4]

    def test_remove_step(self):
        builder = _five_stop_builder()
        removed = builder.remove_step(3)
        assert removed.name == "S3"
        with pytest.raises(InvalidReorder):
            builder.remove_step(1)

    def test_custom_stop_needs_geocoding(self):
        builder = _five_stop_builder()
        builder.add_custom_stop("", address="350 5th Ave, New York")
        custom = builder.stops[-1]
        assert custom.kind is StopKind.CUSTOM
        assert custom.name == "350 5th Ave, New York"
        assert custom.needs_geocoding
        assert custom.key is None

        builder.set_custom_coordinates(6, 40.748, -73.985)
        assert not builder.stops[-1].needs_geocoding

    def test_set_coordinates_on_property_rejected(self):
        with pytest.raises(ValueError):
            _five_stop_builder().set_custom_coordinates(2, 1.0, 1.0)

    def test_custom_starting_point(self):
        builder = TourBuilder(_catalog())
        builder.set_starting_point("custom", address="Grand Central", latitude=40.75, longitude=-73.98)
        builder.add_stop("destination", "D1")
        assert builder.stops[0].display_type() == "Custom Location"
        assert builder.stops[0].name == "Grand Central"

    def test_display_types(self):
        builder = TourBuilder(_catalog())
        builder.set_starting_point("property", "S1")
        builder.add_stop("destination", "D1")
        builder.add_stop("destination", "D2")
        assert [s.display_type() for s in builder.stops] == [
            "Condo", "International Airport", "Restaurant",
        ]

    def test_reset(self):
        builder = _five_stop_builder()
        builder.reset()
        assert builder.stops == []
        assert builder.starting_point is None


# =============================================================================
# Reordering
# =============================================================================

class TestReorder:

    def test_forward_move(self):
        builder = _five_stop_builder()
        assert _names(builder.reorder(2, 4)) == ["S1", "S3", "S4", "S2", "S5"]

    def test_backward_move(self):
        builder = _five_stop_builder()
        assert _names(builder.reorder(5, 2)) == ["S1", "S5", "S2", "S3", "S4"]

    def test_move_to_last(self):
        builder = _five_stop_builder()
        assert _names(builder.reorder(2, 5)) == ["S1", "S3", "S4", "S5", "S2"]

    def test_same_step_is_noop(self):
        builder = _five_stop_builder()
        assert _names(builder.reorder(3, 3)) == ["S1", "S2", "S3", "S4", "S5"]

    @pytest.mark.parametrize("from_step,to_step", [(1, 3), (3, 1), (0, 2), (2, 6), (6, 2)])
    def test_invalid_steps(self, from_step, to_step):
        builder = _five_stop_builder()
        with pytest.raises(InvalidReorder):
            builder.reorder(from_step, to_step)
        assert _names(builder.stops) == ["S1", "S2", "S3", "S4", "S5"]

    def test_preserves_multiset_and_numbering(self):
        builder = _five_stop_builder()
        before = Counter(_names(builder.stops))
        for move in [(2, 4), (5, 3), (4, 2), (3, 5)]:
            stops = builder.reorder(*move)
            assert Counter(_names(stops)) == before
            assert stops[0].name == "S1"
            assert [s.step for s in stops] == [1, 2, 3, 4, 5]

    def test_hidden_duplicate_survives_reorder(self):
        builder = _five_stop_builder()
        builder.add_stop("property", "S1")
        builder.reorder(2, 3)
        assert "S1" in builder.property_ids
        assert _names(builder.stops) == ["S1", "S3", "S2", "S4", "S5"]


# =============================================================================
# Snapshots
# =============================================================================

class TestSnapshots:

    def test_from_selections(self):
        catalog = _catalog()
        start = TourStop.from_location(catalog[("property", "S2")])
        builder = TourBuilder.from_selections(catalog, start, ["S2", "S3"], ["D1"])
        assert _names(builder.stops) == ["S2", "S3", "JFK"]

    def test_from_snapshot_keeps_order(self):
        builder = _five_stop_builder()
        builder.reorder(2, 4)
        data = builder.to_dict()

        restored = TourBuilder.from_snapshot(_catalog(), data["starting_point"], data["stops"])

        assert _names(restored.stops) == ["S1", "S3", "S4", "S2", "S5"]
        assert restored.property_ids == ["S3", "S4", "S2", "S5"]

    def test_stop_dict_accepts_type_key(self):
        stop = TourStop.from_dict({"type": "destination", "id": 5, "name": "Beach", "step": 3})
        assert stop.kind is StopKind.DESTINATION
        assert stop.source_id == "5"
        assert stop.step == 3

    def test_bad_kind_rejected(self):
        with pytest.raises(ValueError):
            TourStop.from_dict({"kind": "spaceship", "name": "x"})

    def test_stop_dict_coordinates_become_floats(self):
        stop = TourStop.from_dict({"kind": "custom", "name": "A", "latitude": "40.71", "longitude": "-74.00"})
        assert stop.latitude == 40.71
        assert stop.longitude == -74.0
        assert TourStop.from_dict({"kind": "custom", "name": "B", "latitude": ""}).latitude is None

    def test_stop_dict_bad_coordinates_rejected(self):
        with pytest.raises(ValueError):
            TourStop.from_dict({"kind": "custom", "name": "A", "latitude": "north"})
