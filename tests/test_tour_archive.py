"""Tests for saving, listing, loading, renaming and deleting tours."""

import pytest

import tour_archive
from route_resolver import TourRoute, resolve
from tour_archive import EmptyRoute, InvalidTourName, TourNotFound
from tour_builder import TourBuilder, make_catalog
from models import list_locations


def _resolved_builder(seeded, fake_provider):
    builder = TourBuilder(make_catalog(seeded.values()))
    builder.set_starting_point("property", "P1")
    builder.add_stop("property", "P2")
    builder.add_stop("destination", "D1")
    route = resolve(builder.stops, fake_provider, optimize=False)
    return builder, route


class TestSave:

    def test_no_route_is_rejected(self, seeded):
        builder = TourBuilder(make_catalog(seeded.values()))
        builder.set_starting_point("property", "P1")
        with pytest.raises(EmptyRoute):
            tour_archive.save("Nope", builder.starting_point, builder.stops, None)
        with pytest.raises(EmptyRoute):
            tour_archive.save("Nope", builder.starting_point, builder.stops, TourRoute(stops=(), legs=()))
        assert tour_archive.list_tours() == []

    def test_save_after_three_stop_resolve(self, seeded, fake_provider):
        builder, route = _resolved_builder(seeded, fake_provider)
        assert len(route.legs) == 2

        saved = tour_archive.save("Saturday viewing", builder.starting_point, route.stops, route)

        listed = tour_archive.list_tours()
        assert [t.id for t in listed] == [saved.id]
        assert listed[0].name == "Saturday viewing"
        assert len(listed[0].resolved_route.legs) == 2

    def test_blank_name_defaults(self, seeded, fake_provider):
        builder, route = _resolved_builder(seeded, fake_provider)
        first = tour_archive.save("  ", builder.starting_point, route.stops, route)
        second = tour_archive.save(None, builder.starting_point, route.stops, route)
        assert first.name == "Tour 1"
        assert second.name == "Tour 2"

    def test_selection_ids_from_stop_kinds(self, seeded, fake_provider):
        builder, route = _resolved_builder(seeded, fake_provider)
        saved = tour_archive.save("x", builder.starting_point, route.stops, route)
        assert saved.property_ids == ["P1", "P2"]
        assert saved.destination_ids == ["D1"]
        assert saved.to_dict()["destination_ids"] == ["D1"]


class TestLifecycle:

    def test_list_newest_first(self, seeded, fake_provider):
        builder, route = _resolved_builder(seeded, fake_provider)
        a = tour_archive.save("A", builder.starting_point, route.stops, route)
        b = tour_archive.save("B", builder.starting_point, route.stops, route)
        assert [t.name for t in tour_archive.list_tours()] == ["B", "A"]
        assert {a.id, b.id} == {t.id for t in tour_archive.list_tours()}

    def test_load(self, seeded, fake_provider):
        builder, route = _resolved_builder(seeded, fake_provider)
        saved = tour_archive.save("A", builder.starting_point, route.stops, route)
        loaded = tour_archive.load(saved.id)
        assert loaded.stops == saved.stops
        assert loaded.starting_point["id"] == "P1"

    def test_rename(self, seeded, fake_provider):
        builder, route = _resolved_builder(seeded, fake_provider)
        saved = tour_archive.save("A", builder.starting_point, route.stops, route)
        renamed = tour_archive.rename(saved.id, "  Sunday  ")
        assert renamed.name == "Sunday"
        with pytest.raises(InvalidTourName):
            tour_archive.rename(saved.id, "   ")

    def test_delete(self, seeded, fake_provider):
        builder, route = _resolved_builder(seeded, fake_provider)
        saved = tour_archive.save("A", builder.starting_point, route.stops, route)
        tour_archive.delete(saved.id)
        assert tour_archive.list_tours() == []
        with pytest.raises(TourNotFound):
            tour_archive.delete(saved.id)

    def test_missing_tour(self):
        with pytest.raises(TourNotFound):
            tour_archive.load("missing")
        with pytest.raises(TourNotFound):
            tour_archive.rename("missing", "New")


class TestRestoreBuilder:

    def test_restores_stop_order_and_ids(self, seeded, fake_provider):
        builder, route = _resolved_builder(seeded, fake_provider)
        builder.reorder(2, 3)
        route = resolve(builder.stops, fake_provider, optimize=False)
        saved = tour_archive.save("A", builder.starting_point, route.stops, route)

        restored = tour_archive.restore_builder(
            tour_archive.load(saved.id), make_catalog(list_locations())
        )

        assert [s.name for s in restored.stops] == ["Maple House", "JFK", "Oak Condo"]
        assert restored.property_ids == ["P2"]
        assert restored.destination_ids == ["D1"]
