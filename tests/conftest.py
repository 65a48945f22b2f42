"""Shared fixtures for the TourMatrix test suite.

Provides a Flask test client wired to a temporary SQLite database, a
fake routing provider with deterministic legs, and a small seeded set of
properties and destinations.
"""

import atexit
import os
import tempfile
import threading

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["TOURMATRIX_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")

# Healthz reports "ok" only with a key present
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")

# The compute endpoint is hit many times per test run
os.environ["RATE_LIMIT_COMPUTE"] = "1000/minute"
os.environ["RATE_LIMIT_DEFAULT"] = "10000/minute"

from app import app  # noqa: E402
import planner  # noqa: E402
from models import Location, init_db, _get_db, upsert_location  # noqa: E402
from routing import DEFAULT_MODES, LegMetrics, RouteLegs, RoutingProvider  # noqa: E402


# Seconds per leg index (1-based) for each mode
_SECONDS_PER_LEG = {"driving": 120, "walking": 720, "transit": 300}


class FakeRoutingProvider(RoutingProvider):
    """Deterministic provider: leg i (0-based) is (i+1) km.

    fail_with      raise this on every call
    fail_for       {destination coordinates: exception} for targeted failures
    waypoint_order returned when optimize=True (may be deliberately invalid)
    missing_modes  modes reported as unroutable (None) on every leg
    leg_count      override the number of legs returned
    """

    def __init__(
        self,
        fail_with=None,
        fail_for=None,
        waypoint_order=None,
        missing_modes=(),
        leg_count=None,
        geocode_result=(40.7128, -74.006),
    ):
        self.fail_with = fail_with
        self.fail_for = fail_for or {}
        self.waypoint_order = waypoint_order
        self.missing_modes = set(missing_modes)
        self.leg_count = leg_count
        self.geocode_result = geocode_result
        self.calls = []
        self.geocode_calls = []
        self._lock = threading.Lock()

    def route(self, origin, destination, waypoints=(), modes=DEFAULT_MODES, optimize=False):
        waypoints = list(waypoints)
        with self._lock:
            self.calls.append({
                "origin": origin,
                "destination": destination,
                "waypoints": waypoints,
                "modes": tuple(modes),
                "optimize": optimize,
            })
        if self.fail_with is not None:
            raise self.fail_with
        if destination in self.fail_for:
            raise self.fail_for[destination]

        if optimize and self.waypoint_order is not None:
            order = list(self.waypoint_order)
        else:
            order = list(range(len(waypoints)))
        count = self.leg_count if self.leg_count is not None else len(waypoints) + 1
        legs = []
        for i in range(count):
            leg = {}
            for mode in modes:
                if mode in self.missing_modes:
                    leg[mode] = None
                else:
                    leg[mode] = LegMetrics(
                        distance_m=1000.0 * (i + 1),
                        duration_s=_SECONDS_PER_LEG[mode] * (i + 1),
                    )
            legs.append(leg)
        return RouteLegs(legs=legs, waypoint_order=order)

    def geocode(self, address):
        self.geocode_calls.append(address)
        if self.fail_with is not None:
            raise self.fail_with
        return self.geocode_result


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test.

    Drops all rows, keeping the schema intact so init_db() doesn't need
    to run every time.
    """
    init_db()
    conn = _get_db()
    for table in ("locations", "distance_metrics", "saved_tours"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    planner._provider = None
    yield


@pytest.fixture()
def client():
    """Flask test client with CSRF disabled (we're testing logic, not CSRF)."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = False
    with app.test_client() as c:
        yield c


@pytest.fixture()
def fake_provider():
    return FakeRoutingProvider()


@pytest.fixture()
def seeded():
    """Two properties and two destinations (an airport and a restaurant)."""
    locations = {
        "P1": Location(
            id="P1", kind="property", name="Maple House",
            latitude=40.7128, longitude=-74.0060,
            category="Single Family", tags=["downtown", "family"],
            address="1 Maple St, New York",
        ),
        "P2": Location(
            id="P2", kind="property", name="Oak Condo",
            latitude=40.7306, longitude=-73.9352,
            category="Condo", tags=["waterfront"],
            address="2 Oak Ave, Brooklyn",
        ),
        "D1": Location(
            id="D1", kind="destination", name="JFK",
            latitude=40.6413, longitude=-73.7781,
            category="Airport", tags=["travel"],
            address="Queens, NY 11430",
        ),
        "D2": Location(
            id="D2", kind="destination", name="Joe's Pizza",
            latitude=40.7306, longitude=-73.9866,
            category="Restaurants", tags=["family"],
            address="7 Carmine St, New York",
        ),
    }
    for location in locations.values():
        upsert_location(location)
    return locations
