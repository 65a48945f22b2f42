"""
Destination category normalization for TourMatrix.

Destinations arrive from CSV imports and hand-entered forms with free-text
categories ("International Airports", "theatre", " Hotels "). Everything
that filters, labels or groups by category goes through normalize() so
the synonym table lives in exactly one place.

Unknown values are not errors: the lower-cased, trimmed input becomes a
canonical bucket of its own.
"""

import re
from typing import Dict, Iterable, List, Optional

# Fallback bucket for missing/blank categories
OTHER = "other"

# Raw (lower-cased, whitespace-collapsed) value -> canonical token.
# Every canonical token maps to itself so normalize() is idempotent.
CATEGORY_SYNONYMS: Dict[str, str] = {
    "international airport": "int_airport",
    "international airports": "int_airport",
    "international_airport": "int_airport",
    "int airport": "int_airport",
    "int airports": "int_airport",
    "int_airport": "int_airport",
    "airport": "airport",
    "airports": "airport",
    "bus station": "bus_station",
    "bus stations": "bus_station",
    "bus_station": "bus_station",
    "train station": "train_station",
    "train stations": "train_station",
    "train_station": "train_station",
    "attraction": "attraction",
    "attractions": "attraction",
    "beach": "beach",
    "beaches": "beach",
    "entertainment": "entertainment",
    "theater": "entertainment",
    "theatre": "entertainment",
    "theaters": "entertainment",
    "theatres": "entertainment",
    "hospital": "hospital",
    "hospitals": "hospital",
    "hotel": "hotel",
    "hotels": "hotel",
    "museum": "museum",
    "museums": "museum",
    "mountain": "mountain",
    "mountains": "mountain",
    "park": "park",
    "parks": "park",
    "restaurant": "restaurant",
    "restaurants": "restaurant",
    "school": "school",
    "schools": "school",
    "shopping": "shopping",
    "store": "shopping",
    "stores": "shopping",
    "other": OTHER,
}

CATEGORY_LABELS: Dict[str, str] = {
    "int_airport": "International Airport",
    "airport": "Airport",
    "bus_station": "Bus Station",
    "train_station": "Train Station",
    "attraction": "Attraction",
    "beach": "Beach",
    "entertainment": "Entertainment",
    "hospital": "Hospital",
    "hotel": "Hotel",
    "museum": "Museum",
    "mountain": "Mountain",
    "park": "Park",
    "restaurant": "Restaurant",
    "school": "School",
    "shopping": "Shopping",
    "other": "Other",
}

_WHITESPACE_RE = re.compile(r"\s+")


def normalize(raw: Optional[str]) -> str:
    """Map a free-text category to its canonical token.

    " INT AIRPORT ", "International Airports" and "int_airport" all
    return "int_airport". Values not in the table come back lower-cased
    and trimmed; None or blank input returns "other".
    """
    if raw is None:
        return OTHER
    cleaned = _WHITESPACE_RE.sub(" ", str(raw)).strip().lower()
    if not cleaned:
        return OTHER
    return CATEGORY_SYNONYMS.get(cleaned, cleaned)


def label(canonical: str) -> str:
    """Display label for a canonical token, or the token itself."""
    return CATEGORY_LABELS.get(canonical, canonical)


def category_options(raw_categories: Iterable[Optional[str]]) -> List[Dict[str, str]]:
    """Distinct canonical categories with labels, sorted by label."""
    seen = {normalize(c) for c in raw_categories}
    return sorted(
        ({"value": c, "label": label(c)} for c in seen),
        key=lambda opt: opt["label"].lower(),
    )
