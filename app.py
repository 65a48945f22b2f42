import os
import sys
import logging
import uuid
from datetime import datetime

from flask import Flask, Response, abort, g, jsonify, request
from flask_wtf.csrf import CSRFError, CSRFProtect, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

import planner
from models import init_db
from tm_trace import TraceContext, clear_trace, set_trace

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN (silent when unset)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions
    from routing import ProviderError

    def _sentry_before_send(event, hint):
        """Demote expected provider failures to breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            if exc_type is not None and issubclass(exc_type, ProviderError):
                sentry_sdk.add_breadcrumb(
                    category="routing",
                    message=msg,
                    level="warning",
                )
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="http",
                    message=msg,
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'tourmatrix-dev-key')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'tourmatrix-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Behind a reverse proxy: remote_addr must be the client for the limiter.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection: validates the X-CSRFToken header on every POST/PUT/DELETE.
# Clients fetch a token from /api/csrf-token once per session.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: distance computation fans out to the paid routing API.
# In-memory storage is per-process (with 2 gunicorn workers the effective
# limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "120/minute")
RATE_LIMIT_COMPUTE = os.environ.get("RATE_LIMIT_COMPUTE", "10/hour")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "Distance calculation and routing will fail until it is configured. "
        "For local development, copy .env.example to .env and add your key."
    )

_STATUS_BY_KIND = {
    planner.NOT_FOUND: 404,
    planner.INVALID_REQUEST: 400,
    planner.INSUFFICIENT_STOPS: 400,
    planner.EMPTY_ROUTE: 400,
    planner.PROVIDER_UNAVAILABLE: 503,
}


def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    return (len(missing) == 0, missing)


def _respond(result, success_status=200, **extra):
    """OperationResult -> JSON response with the status its error kind maps to."""
    status = _STATUS_BY_KIND.get(result.error_kind, success_status)
    if not result.ok and result.error_kind not in _STATUS_BY_KIND and result.error_kind != planner.ROUTE_UNRESOLVED:
        status = 500
    body = result.to_dict()
    body["request_id"] = g.request_id
    body.update(extra)
    return jsonify(body), status


def _run_traced(fn, *args, **kwargs):
    """Run a facade operation under a fresh per-request trace."""
    trace_ctx = TraceContext(trace_id=g.request_id)
    set_trace(trace_ctx)
    try:
        result = fn(*args, **kwargs)
    finally:
        trace_ctx.log_summary()
        clear_trace()
    return result, trace_ctx.summary_dict()


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object")
    return data


def _filter_args():
    return dict(
        property_ids=request.args.getlist("property_id"),
        destination_ids=request.args.getlist("destination_id"),
        selected_categories=request.args.getlist("category"),
        selected_tags=request.args.getlist("tag"),
    )


def _parse_timestamp(value):
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/api/csrf-token")
@limiter.exempt
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@app.route("/api/categories/normalize")
def normalize_category():
    return _respond(planner.normalize_category(request.args.get("q")))


@app.route("/api/locations", methods=["GET"])
def list_locations():
    return _respond(planner.list_all_locations(request.args.get("kind")))


@app.route("/api/locations", methods=["POST"])
def sync_locations():
    """Upsert property/destination records pushed by the CRUD system.

    Accepts JSON: {"properties": [...], "destinations": [...]}
    """
    data = _json_body()
    return _respond(planner.sync_locations(
        data.get("properties") or [],
        data.get("destinations") or [],
    ))


@app.route("/api/analysis/calculate-distances", methods=["POST"])
@limiter.limit(RATE_LIMIT_COMPUTE)
def calculate_distances():
    """Fill in every missing property x destination pair.

    Accepts JSON: {"force": false, "stale_before": "2024-01-01T00:00:00+00:00"}
    """
    data = _json_body()
    try:
        stale_before = _parse_timestamp(data.get("stale_before"))
    except (AttributeError, TypeError, ValueError):
        return _respond(planner.OperationResult.failure(
            planner.INVALID_REQUEST, "stale_before must be an ISO 8601 timestamp"
        ))
    result, trace = _run_traced(
        planner.compute_missing_distances,
        force=bool(data.get("force")),
        stale_before=stale_before,
    )
    return _respond(result, trace=trace)


@app.route("/api/analysis/distances")
def query_distances():
    return _respond(planner.query_distances(**_filter_args()))


@app.route("/api/analysis/distances.csv")
def export_distances_csv():
    result = planner.export_distances_csv(**_filter_args())
    if not result.ok:
        return _respond(result)
    return Response(
        result.data["csv"],
        mimetype="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename={result.data['filename']}"
        },
    )


@app.route("/api/tours/build", methods=["POST"])
def build_tour():
    """Assemble an itinerary from selections.

    Accepts JSON: {"starting_point": {"kind": "property", "id": "p1"},
                   "property_ids": [...], "destination_ids": [...],
                   "custom_stops": [{"name", "address", "latitude", "longitude"}],
                   "moves": [[from_step, to_step], ...]}
    """
    data = _json_body()
    return _respond(planner.build_tour(
        starting_point=data.get("starting_point"),
        property_ids=data.get("property_ids") or [],
        destination_ids=data.get("destination_ids") or [],
        custom_stops=data.get("custom_stops") or [],
        moves=data.get("moves") or [],
    ))


@app.route("/api/tours/calculate-route", methods=["POST"])
def calculate_route():
    data = _json_body()
    optimize = data.get("optimize")
    result, _ = _run_traced(
        planner.resolve_tour_route,
        data.get("stops") or [],
        optimize=None if optimize is None else bool(optimize),
    )
    return _respond(result)


@app.route("/api/tours", methods=["GET"])
def list_tours():
    return _respond(planner.list_tours())


@app.route("/api/tours", methods=["POST"])
def save_tour():
    data = _json_body()
    return _respond(planner.save_tour(
        data.get("name"),
        data.get("starting_point"),
        data.get("stops") or [],
        data.get("route"),
    ), success_status=201)


@app.route("/api/tours/<tour_id>", methods=["GET"])
def load_tour(tour_id):
    return _respond(planner.load_tour(tour_id))


@app.route("/api/tours/<tour_id>", methods=["PUT"])
def rename_tour(tour_id):
    return _respond(planner.rename_tour(tour_id, _json_body().get("name")))


@app.route("/api/tours/<tour_id>", methods=["DELETE"])
def delete_tour(tour_id):
    return _respond(planner.delete_tour(tour_id))


@app.route("/api/geocode", methods=["POST"])
def geocode():
    return _respond(planner.geocode_address(_json_body().get("address")))


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(CSRFError)
def csrf_error(e):
    return jsonify({"success": False, "error_kind": planner.INVALID_REQUEST, "message": e.description}), 400


@app.errorhandler(400)
def bad_request(e):
    return jsonify({"success": False, "error_kind": planner.INVALID_REQUEST, "message": e.description}), 400


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "success": False,
        "message": "Too many requests. Please wait and try again.",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"success": False, "error_kind": planner.NOT_FOUND, "message": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({"success": False, "message": "Method not allowed"}), 405


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"success": False, "message": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
