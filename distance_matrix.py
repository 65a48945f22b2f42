"""
Distance matrix: pairwise travel metrics between properties and destinations.

compute_missing() fills the gaps in the property x destination cross
product.  Every pair is independent: it is routed on a bounded thread pool
and written with a single upsert, so one bad pair never blocks the rest
and a re-run on a complete matrix is a no-op.

Metrics are stored in provider units (meters, seconds).  Kilometers,
miles and "H hr M min" strings are derived at read time by the pure
formatting helpers at the bottom of this module.
"""

import math
import os
import threading
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from models import (
    Location,
    METRIC_COLUMNS,
    get_distance_metrics,
    get_metric_timestamps,
    list_locations,
    upsert_distance_metric,
)
from routing import (
    DEFAULT_MODES,
    TRAVEL_MODES,
    LegMetrics,
    ProviderError,
    ProviderUnavailable,
    RouteNotFound,
    RoutingProvider,
)
from tm_trace import get_trace, set_trace

logger = logging.getLogger(__name__)

# Upper bound on concurrent provider calls during a batch.  Keeps us under
# the provider's per-second quota; raise it only with a paid quota.
DISTANCE_MAX_WORKERS = int(os.environ.get("DISTANCE_MAX_WORKERS", "10"))

METERS_PER_KM = 1000.0
METERS_PER_MILE = 1609.344

# Returned by a pool worker that never called the provider because an
# earlier pair found it unavailable.
_SKIPPED = object()


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class PairFailure:
    property_id: str
    destination_id: str
    error: str


@dataclass
class ComputeSummary:
    """Outcome of a compute_missing() batch."""
    calculated: int = 0
    skipped_existing: int = 0
    failures: List[PairFailure] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return len(self.failures)

    @property
    def error_kind(self) -> Optional[str]:
        return "PartialComputeFailure" if self.failures else None

    def message(self) -> str:
        if self.calculated == 0 and not self.failures:
            return "All distances already calculated"
        msg = f"Calculated {self.calculated} distances"
        if self.failures:
            msg += f" ({self.errors} errors)"
        return msg

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calculated": self.calculated,
            "errors": self.errors,
            "skipped_existing": self.skipped_existing,
            "message": self.message(),
            "failures": [
                {
                    "property_id": f.property_id,
                    "destination_id": f.destination_id,
                    "error": f.error,
                }
                for f in self.failures
            ],
        }


@dataclass
class DistanceRow:
    """One stored metric joined with both of its locations."""
    property: Location
    destination: Location
    calculated_at: str
    driving_distance: Optional[float] = None
    driving_duration: Optional[float] = None
    walking_distance: Optional[float] = None
    walking_duration: Optional[float] = None
    transit_distance: Optional[float] = None
    transit_duration: Optional[float] = None

    @property
    def property_id(self) -> str:
        return self.property.id

    @property
    def destination_id(self) -> str:
        return self.destination.id

    def metric(self, mode: str) -> Optional[LegMetrics]:
        distance = getattr(self, f"{mode}_distance")
        duration = getattr(self, f"{mode}_duration")
        if distance is None and duration is None:
            return None
        return LegMetrics(distance_m=distance, duration_s=duration)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "property_id": self.property_id,
            "destination_id": self.destination_id,
            "property": self.property.to_dict(),
            "destination": self.destination.to_dict(),
            "calculated_at": self.calculated_at,
        }
        for col in METRIC_COLUMNS:
            data[col] = getattr(self, col)
        data["distance_km"] = meters_to_km(self.driving_distance)
        data["distance_miles"] = meters_to_miles(self.driving_distance)
        data["distance_text"] = format_distance(self.driving_distance)
        for mode in TRAVEL_MODES:
            data[f"{mode}_duration_text"] = format_duration_seconds(
                getattr(self, f"{mode}_duration")
            )
        return data


# =============================================================================
# COMPUTATION
# =============================================================================

def _pending_pairs(
    properties: Sequence[Location],
    destinations: Sequence[Location],
    force: bool,
    stale_before: Optional[datetime],
) -> Tuple[List[Tuple[Location, Location]], int]:
    """Pairs that need routing, plus the count of pairs left untouched."""
    existing = {} if force else get_metric_timestamps()
    stale_iso = None
    if stale_before is not None:
        if stale_before.tzinfo is None:
            stale_before = stale_before.replace(tzinfo=timezone.utc)
        stale_iso = stale_before.astimezone(timezone.utc).isoformat()
    pending, untouched = [], 0
    for prop in properties:
        for dest in destinations:
            calculated_at = existing.get((prop.id, dest.id))
            if calculated_at is None or (stale_iso and calculated_at < stale_iso):
                pending.append((prop, dest))
            else:
                untouched += 1
    return pending, untouched


def _compute_pair(
    provider: RoutingProvider,
    prop: Location,
    dest: Location,
    modes: Sequence[str],
) -> str:
    """Route one pair in every mode, then write it.  Returns calculated_at."""
    result = provider.route(prop.coordinates, dest.coordinates, (), modes, False)
    if len(result.legs) != 1:
        raise RouteNotFound(f"expected 1 leg, provider returned {len(result.legs)}")
    leg = result.legs[0]
    primary = modes[0]
    if leg.get(primary) is None:
        raise RouteNotFound(f"no {primary} route")

    values: Dict[str, Optional[float]] = {}
    for mode in modes:
        metrics = leg.get(mode)
        values[f"{mode}_distance"] = metrics.distance_m if metrics else None
        values[f"{mode}_duration"] = metrics.duration_s if metrics else None
    return upsert_distance_metric(prop.id, dest.id, values)


def compute_missing(
    properties: Sequence[Location],
    destinations: Sequence[Location],
    provider: RoutingProvider,
    modes: Sequence[str] = DEFAULT_MODES,
    force: bool = False,
    stale_before: Optional[datetime] = None,
    max_workers: Optional[int] = None,
) -> ComputeSummary:
    """
    Compute and store metrics for every pair that lacks one.

    force=True recomputes every pair; stale_before recomputes pairs whose
    calculated_at predates it.  The first pending pair is routed on the
    calling thread as a reachability probe: if the provider is unavailable
    there, ProviderUnavailable is raised and nothing is written.  After
    that, failures are counted per pair.  A provider outage mid-batch stops
    the pairs that have not started yet; they are reported as errors.
    """
    modes = tuple(modes)
    unknown = [m for m in modes if m not in TRAVEL_MODES]
    if not modes or unknown:
        raise ValueError(f"Unsupported travel modes: {unknown or 'none given'}")

    summary = ComputeSummary()
    pending, summary.skipped_existing = _pending_pairs(
        properties, destinations, force, stale_before
    )

    routable = []
    for prop, dest in pending:
        if prop.coordinates is None or dest.coordinates is None:
            summary.failures.append(PairFailure(prop.id, dest.id, "missing coordinates"))
        else:
            routable.append((prop, dest))

    logger.info(
        "[matrix] %d pairs pending (%d already stored, %d without coordinates)",
        len(routable), summary.skipped_existing, len(pending) - len(routable),
    )
    if not routable:
        return summary

    probe, rest = routable[0], routable[1:]
    try:
        _compute_pair(provider, probe[0], probe[1], modes)
        summary.calculated += 1
    except ProviderUnavailable:
        logger.warning("[matrix] Routing provider unavailable, batch aborted")
        raise
    except ProviderError as e:
        logger.warning("[matrix] %s -> %s failed: %s", probe[0].id, probe[1].id, e)
        summary.failures.append(PairFailure(probe[0].id, probe[1].id, str(e)))

    if not rest:
        return summary

    parent_trace = get_trace()
    provider_down = threading.Event()

    def _worker(prop: Location, dest: Location):
        set_trace(parent_trace)
        if provider_down.is_set():
            return _SKIPPED
        try:
            return _compute_pair(provider, prop, dest, modes)
        except ProviderUnavailable:
            provider_down.set()
            raise

    workers = max(1, max_workers or DISTANCE_MAX_WORKERS)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {pool.submit(_worker, p, d): (p, d) for p, d in rest}
        for future in as_completed(futures):
            prop, dest = futures[future]
            try:
                outcome = future.result()
            except ProviderError as e:
                logger.warning("[matrix] %s -> %s failed: %s", prop.id, dest.id, e)
                summary.failures.append(PairFailure(prop.id, dest.id, str(e)))
                continue
            except Exception as e:
                logger.exception("[matrix] %s -> %s crashed", prop.id, dest.id)
                summary.failures.append(PairFailure(prop.id, dest.id, f"{type(e).__name__}: {e}"))
                continue
            if outcome is _SKIPPED:
                summary.failures.append(
                    PairFailure(prop.id, dest.id, "skipped: routing provider unavailable")
                )
            else:
                summary.calculated += 1

    logger.info("[matrix] %s", summary.message())
    return summary


# =============================================================================
# QUERIES
# =============================================================================

def query(
    property_ids: Optional[Iterable[str]] = None,
    destination_ids: Optional[Iterable[str]] = None,
) -> List[DistanceRow]:
    """
    Stored metrics joined with their locations, newest first.

    Read-only: never triggers computation, so results may be stale or
    incomplete.  Metrics whose property or destination record is gone are
    left out.
    """
    locations = {(loc.kind, loc.id): loc for loc in list_locations()}
    rows = []
    for record in get_distance_metrics(property_ids, destination_ids):
        prop = locations.get(("property", record["property_id"]))
        dest = locations.get(("destination", record["destination_id"]))
        if prop is None or dest is None:
            logger.debug(
                "[matrix] orphan metric %s -> %s skipped",
                record["property_id"], record["destination_id"],
            )
            continue
        rows.append(DistanceRow(
            property=prop,
            destination=dest,
            calculated_at=record["calculated_at"],
            **{col: record[col] for col in METRIC_COLUMNS},
        ))
    return rows


# =============================================================================
# FORMATTING
# =============================================================================

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def meters_to_km(meters: Optional[float]) -> Optional[float]:
    if meters is None:
        return None
    return meters / METERS_PER_KM


def meters_to_miles(meters: Optional[float]) -> Optional[float]:
    if meters is None:
        return None
    return meters / METERS_PER_MILE


def format_distance(meters: Optional[float]) -> str:
    """'12.3 km (7.6 mi)', or 'N/A' when absent."""
    if meters is None:
        return "N/A"
    return f"{meters_to_km(meters):.1f} km ({meters_to_miles(meters):.1f} mi)"


def format_duration_minutes(minutes: Optional[float]) -> str:
    """
    'H hr M min' from a minute count.

    Hours are floor-divided from the unrounded value and only the remainder
    is rounded, so the two parts never drift apart.  A remainder that
    rounds up to 60 carries into the hour.
    """
    if minutes is None:
        return "N/A"
    if minutes <= 0:
        return "0 min"
    hours = int(minutes // 60)
    remaining = _round_half_up(minutes % 60)
    if remaining == 60:
        hours += 1
        remaining = 0
    if hours == 0:
        return f"{remaining} min"
    if remaining == 0:
        return f"{hours} hr"
    return f"{hours} hr {remaining} min"


def format_duration_seconds(seconds: Optional[float]) -> str:
    if seconds is None:
        return "N/A"
    return format_duration_minutes(seconds / 60)
