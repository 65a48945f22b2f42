"""
SQLite persistence for TourMatrix locations, distance metrics and saved tours.

No ORM, just raw sqlite3. WAL mode lets the analysis page read the
distance matrix while a compute batch is writing to it. Every helper opens
its own connection, so pool threads never share one.

Property and destination records are owned by the surrounding CRUD
application; the locations table only mirrors the fields the engine
needs (coordinates, category, tags, display address).
"""

import sqlite3
import os
import json
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("TOURMATRIX_DB_PATH", "tourmatrix.db")

PROPERTY = "property"
DESTINATION = "destination"

METRIC_COLUMNS = (
    "driving_distance",
    "driving_duration",
    "walking_distance",
    "walking_duration",
    "transit_distance",
    "transit_duration",
)


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS locations (
            location_id TEXT NOT NULL,
            kind        TEXT NOT NULL,
            name        TEXT NOT NULL,
            latitude    REAL,
            longitude   REAL,
            category    TEXT NOT NULL DEFAULT '',
            tags_json   TEXT NOT NULL DEFAULT '[]',
            address     TEXT NOT NULL DEFAULT '',
            PRIMARY KEY (kind, location_id)
        );

        -- One row per (property, destination) pair; recomputation overwrites
        CREATE TABLE IF NOT EXISTS distance_metrics (
            property_id       TEXT NOT NULL,
            destination_id    TEXT NOT NULL,
            driving_distance  REAL,
            driving_duration  REAL,
            walking_distance  REAL,
            walking_duration  REAL,
            transit_distance  REAL,
            transit_duration  REAL,
            calculated_at     TEXT NOT NULL,
            PRIMARY KEY (property_id, destination_id)
        );
        CREATE INDEX IF NOT EXISTS idx_metrics_destination ON distance_metrics(destination_id);
        CREATE INDEX IF NOT EXISTS idx_metrics_calculated ON distance_metrics(calculated_at);

        CREATE TABLE IF NOT EXISTS saved_tours (
            tour_id             TEXT PRIMARY KEY,
            name                TEXT NOT NULL,
            starting_point_json TEXT,
            stops_json          TEXT NOT NULL,
            route_json          TEXT NOT NULL,
            created_at          TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_tours_created ON saved_tours(created_at);
    """)
    conn.commit()
    conn.close()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------

@dataclass
class Location:
    """A property or destination as the engine sees it: a point with tags."""
    id: str
    kind: str                       # PROPERTY | DESTINATION
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    category: str = ""              # destination category or property type
    tags: List[str] = field(default_factory=list)
    address: str = ""

    def __post_init__(self):
        self.tags = sorted({t for t in self.tags if t})

    @property
    def coordinates(self) -> Optional[Tuple[float, float]]:
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)

    @classmethod
    def from_property_record(cls, record: Dict[str, Any]) -> "Location":
        """Build from a property record with a structured address."""
        street = record.get("streetAddress") or record.get("street_address") or ""
        city = record.get("city") or ""
        return cls(
            id=str(record["id"]),
            kind=PROPERTY,
            name=record.get("name") or "Unnamed Property",
            latitude=record.get("latitude"),
            longitude=record.get("longitude"),
            category=record.get("propertyType") or record.get("property_type") or "",
            tags=list(record.get("tags") or []),
            address=f"{street}, {city}".strip().strip(",").strip(),
        )

    @classmethod
    def from_destination_record(cls, record: Dict[str, Any]) -> "Location":
        """Build from a destination record with a single address string."""
        return cls(
            id=str(record["id"]),
            kind=DESTINATION,
            name=record.get("name") or "Unnamed Destination",
            latitude=record.get("latitude"),
            longitude=record.get("longitude"),
            category=record.get("category") or "",
            tags=list(record.get("tags") or []),
            address=record.get("address") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "category": self.category,
            "tags": list(self.tags),
            "address": self.address,
        }


def _row_to_location(row) -> Location:
    return Location(
        id=row["location_id"],
        kind=row["kind"],
        name=row["name"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        category=row["category"],
        tags=json.loads(row["tags_json"] or "[]"),
        address=row["address"],
    )


def upsert_location(location: Location) -> None:
    """Insert or replace the engine's copy of a property/destination."""
    if location.kind not in (PROPERTY, DESTINATION):
        raise ValueError(f"Unknown location kind: {location.kind!r}")
    conn = _get_db()
    conn.execute(
        """INSERT INTO locations
           (location_id, kind, name, latitude, longitude, category, tags_json, address)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(kind, location_id) DO UPDATE SET
             name = excluded.name,
             latitude = excluded.latitude,
             longitude = excluded.longitude,
             category = excluded.category,
             tags_json = excluded.tags_json,
             address = excluded.address""",
        (
            location.id,
            location.kind,
            location.name,
            location.latitude,
            location.longitude,
            location.category or "",
            json.dumps(location.tags),
            location.address or "",
        ),
    )
    conn.commit()
    conn.close()


def get_location(kind: str, location_id: str) -> Optional[Location]:
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM locations WHERE kind = ? AND location_id = ?",
        (kind, location_id),
    ).fetchone()
    conn.close()
    return _row_to_location(row) if row else None


def list_locations(kind: Optional[str] = None) -> List[Location]:
    """All locations (optionally of one kind), ordered by name."""
    conn = _get_db()
    if kind:
        rows = conn.execute(
            "SELECT * FROM locations WHERE kind = ? ORDER BY name, location_id", (kind,)
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM locations ORDER BY kind, name, location_id"
        ).fetchall()
    conn.close()
    return [_row_to_location(r) for r in rows]


# ---------------------------------------------------------------------------
# Distance metrics
# ---------------------------------------------------------------------------

def upsert_distance_metric(
    property_id: str,
    destination_id: str,
    values: Dict[str, Optional[float]],
    calculated_at: Optional[str] = None,
) -> str:
    """
    Write the metric for one (property, destination) pair in one statement.

    values maps METRIC_COLUMNS names to meters/seconds (missing keys are
    stored as NULL).  An existing row for the pair is overwritten in full,
    so concurrent writers to the same pair resolve as last-write-wins.
    Returns the calculated_at timestamp that was stored.
    """
    calculated_at = calculated_at or _now_iso()
    conn = _get_db()
    conn.execute(
        """INSERT INTO distance_metrics
           (property_id, destination_id, driving_distance, driving_duration,
            walking_distance, walking_duration, transit_distance, transit_duration,
            calculated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(property_id, destination_id) DO UPDATE SET
             driving_distance = excluded.driving_distance,
             driving_duration = excluded.driving_duration,
             walking_distance = excluded.walking_distance,
             walking_duration = excluded.walking_duration,
             transit_distance = excluded.transit_distance,
             transit_duration = excluded.transit_duration,
             calculated_at = excluded.calculated_at""",
        (property_id, destination_id)
        + tuple(values.get(col) for col in METRIC_COLUMNS)
        + (calculated_at,),
    )
    conn.commit()
    conn.close()
    return calculated_at


def _id_filter_clause(
    property_ids: Optional[Iterable[str]],
    destination_ids: Optional[Iterable[str]],
) -> Tuple[str, list]:
    clauses, params = [], []
    if property_ids is not None:
        ids = list(property_ids)
        clauses.append(f"property_id IN ({','.join('?' * len(ids))})" if ids else "0")
        params.extend(ids)
    if destination_ids is not None:
        ids = list(destination_ids)
        clauses.append(f"destination_id IN ({','.join('?' * len(ids))})" if ids else "0")
        params.extend(ids)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def get_distance_metrics(
    property_ids: Optional[Iterable[str]] = None,
    destination_ids: Optional[Iterable[str]] = None,
) -> List[Dict[str, Any]]:
    """Stored metric rows as dicts, newest first.  None means "no filter"."""
    where, params = _id_filter_clause(property_ids, destination_ids)
    conn = _get_db()
    rows = conn.execute(
        f"SELECT * FROM distance_metrics{where} "
        "ORDER BY calculated_at DESC, property_id, destination_id",
        params,
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def get_metric_timestamps() -> Dict[Tuple[str, str], str]:
    """(property_id, destination_id) -> calculated_at for every stored pair."""
    conn = _get_db()
    rows = conn.execute(
        "SELECT property_id, destination_id, calculated_at FROM distance_metrics"
    ).fetchall()
    conn.close()
    return {(r["property_id"], r["destination_id"]): r["calculated_at"] for r in rows}


def count_distance_metrics() -> int:
    conn = _get_db()
    n = conn.execute("SELECT COUNT(*) FROM distance_metrics").fetchone()[0]
    conn.close()
    return n


# ---------------------------------------------------------------------------
# Saved tours
# ---------------------------------------------------------------------------

def generate_tour_id():
    """Short, URL-safe tour ID (8 chars)."""
    return uuid.uuid4().hex[:8]


def create_tour(name, starting_point, stops, route):
    """
    Persist a tour snapshot. Returns the stored row as a dict.

    starting_point, stops and route are plain JSON-serializable structures.
    """
    tour_id = generate_tour_id()
    now = _now_iso()
    conn = _get_db()
    conn.execute(
        """INSERT INTO saved_tours
           (tour_id, name, starting_point_json, stops_json, route_json, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            tour_id,
            name,
            json.dumps(starting_point, default=str),
            json.dumps(stops, default=str),
            json.dumps(route, default=str),
            now,
        ),
    )
    conn.commit()
    conn.close()
    return get_tour(tour_id)


def _row_to_tour(row) -> Optional[Dict[str, Any]]:
    data = dict(row)
    try:
        data["starting_point"] = json.loads(data.pop("starting_point_json") or "null")
        data["stops"] = json.loads(data.pop("stops_json"))
        data["route"] = json.loads(data.pop("route_json"))
    except (json.JSONDecodeError, TypeError) as e:
        logger.error("Corrupted snapshot JSON for tour %s: %s", data.get("tour_id"), e)
        return None
    return data


def get_tour(tour_id):
    """Load a tour by ID, or None if not found (or unreadable)."""
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM saved_tours WHERE tour_id = ?", (tour_id,)
    ).fetchone()
    conn.close()
    if not row:
        return None
    return _row_to_tour(row)


def list_tours():
    """All saved tours, newest first.  Unreadable rows are skipped."""
    conn = _get_db()
    rows = conn.execute(
        "SELECT * FROM saved_tours ORDER BY created_at DESC, rowid DESC"
    ).fetchall()
    conn.close()
    tours = (_row_to_tour(r) for r in rows)
    return [t for t in tours if t is not None]


def count_tours() -> int:
    conn = _get_db()
    n = conn.execute("SELECT COUNT(*) FROM saved_tours").fetchone()[0]
    conn.close()
    return n


def rename_tour(tour_id, name) -> bool:
    """Rename a tour. Returns False if the tour does not exist."""
    conn = _get_db()
    cur = conn.execute(
        "UPDATE saved_tours SET name = ? WHERE tour_id = ?", (name, tour_id)
    )
    conn.commit()
    conn.close()
    return cur.rowcount > 0


def delete_tour(tour_id) -> bool:
    """Delete a tour. Returns False if the tour does not exist."""
    conn = _get_db()
    cur = conn.execute("DELETE FROM saved_tours WHERE tour_id = ?", (tour_id,))
    conn.commit()
    conn.close()
    return cur.rowcount > 0
