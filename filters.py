"""
Compound filtering and CSV export over the distance matrix.

The analysis view only shows rows once the user has narrowed the matrix:
at least one property AND at least one of destination / category / tag.
With fewer selections the result is empty on purpose, so nobody ends up
staring at (or exporting) the full cross product by accident.
"""

import csv
import io
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from categories import category_options, normalize
from distance_matrix import (
    DistanceRow,
    format_duration_seconds,
    meters_to_km,
    meters_to_miles,
)

CSV_HEADER = [
    "Property Name",
    "Property Address",
    "Property Type",
    "Destination Name",
    "Destination Address",
    "Destination Category",
    "Distance (Miles)",
    "Distance (KM)",
    "Driving Duration",
    "Walking Duration",
    "Transit Duration",
    "Calculated At",
]

NOT_AVAILABLE = "N/A"


def has_required_selection(
    selected_property_ids: Iterable[str],
    selected_destination_ids: Iterable[str],
    selected_categories: Iterable[str],
    selected_tags: Iterable[str],
) -> bool:
    """At least one property and at least one secondary facet."""
    if not list(selected_property_ids):
        return False
    return bool(
        list(selected_destination_ids)
        or list(selected_categories)
        or list(selected_tags)
    )


def filter_distances(
    rows: Sequence[DistanceRow],
    selected_property_ids: Iterable[str] = (),
    selected_destination_ids: Iterable[str] = (),
    selected_categories: Iterable[str] = (),
    selected_tags: Iterable[str] = (),
) -> List[DistanceRow]:
    """
    Rows matching every facet, in input order.

    Within a facet an empty selection matches everything; across facets
    the tests are ANDed.  Categories are compared after normalization on
    both sides, tags match if either endpoint carries any selected tag.
    """
    property_ids = set(selected_property_ids)
    destination_ids = set(selected_destination_ids)
    categories = {normalize(c) for c in selected_categories}
    tags = set(selected_tags)

    if not has_required_selection(property_ids, destination_ids, categories, tags):
        return []

    matched = []
    for row in rows:
        if property_ids and row.property_id not in property_ids:
            continue
        if destination_ids and row.destination_id not in destination_ids:
            continue
        if categories and normalize(row.destination.category) not in categories:
            continue
        if tags and tags.isdisjoint(set(row.property.tags) | set(row.destination.tags)):
            continue
        matched.append(row)
    return matched


def facet_options(rows: Sequence[DistanceRow]) -> Dict[str, Any]:
    """Selectable values present in the matrix (for the filter sidebar)."""
    properties, destinations = {}, {}
    tags = set()
    for row in rows:
        properties[row.property_id] = row.property.name
        destinations[row.destination_id] = row.destination.name
        tags.update(row.property.tags)
        tags.update(row.destination.tags)
    return {
        "properties": [
            {"id": pid, "name": name}
            for pid, name in sorted(properties.items(), key=lambda kv: kv[1].lower())
        ],
        "destinations": [
            {"id": did, "name": name}
            for did, name in sorted(destinations.items(), key=lambda kv: kv[1].lower())
        ],
        "categories": category_options(r.destination.category for r in rows),
        "tags": sorted(tags, key=str.lower),
    }


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------

def _two_decimals(value: Optional[float]) -> str:
    return NOT_AVAILABLE if value is None else f"{value:.2f}"


def _calculated_date(calculated_at: Optional[str]) -> str:
    if not calculated_at:
        return NOT_AVAILABLE
    try:
        return datetime.fromisoformat(calculated_at).date().isoformat()
    except ValueError:
        return calculated_at


def csv_row(row: DistanceRow) -> List[str]:
    return [
        row.property.name or "Unnamed Property",
        row.property.address,
        row.property.category,
        row.destination.name,
        row.destination.address,
        row.destination.category,
        _two_decimals(meters_to_miles(row.driving_distance)),
        _two_decimals(meters_to_km(row.driving_distance)),
        format_duration_seconds(row.driving_duration),
        format_duration_seconds(row.walking_duration),
        format_duration_seconds(row.transit_duration),
        _calculated_date(row.calculated_at),
    ]


def export_csv(rows: Sequence[DistanceRow]) -> str:
    """CSV text for a filtered view.  Every field is double-quoted."""
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow(csv_row(row))
    return output.getvalue()


def export_filename(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"property-distances-{today.isoformat()}.csv"
