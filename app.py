import os
import logging
import uuid
from dataclasses import replace

from flask import Flask, request, jsonify, g
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from block_state import Coordinate, InvalidInputError, aggregate
from eco_config import ProviderSettings, SIMULATION_MODEL
from eco_trace import TraceContext, get_trace, set_trace, clear_trace
from geocode import GeocodeUpstreamError, LocationNotFound, resolve
from health_monitor import get_status, overall_status
from history import clean_series, daily_means
from models import (
    init_db,
    get_simulation,
    list_rewards,
    list_simulations,
    REWARD_MINTED,
    REWARD_PENDING,
)
from providers import ProviderBundle
from simulation import SimulationRequest, simulate
import worker

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Client sent a bad coordinate / AQI / query
            if exc_type is not None and issubclass(exc_type, InvalidInputError):
                sentry_sdk.add_breadcrumb(category="input", message=msg, level="info")
                return None
            # Provider timeouts / request failures
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(category="provider", message=msg, level="warning")
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

# Proxy fix: the API runs behind a reverse proxy that sets X-Forwarded-For.
# ProxyFix rewrites request.remote_addr to the real client IP so both
# Flask-Limiter and logging see the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# The map client is served from a different origin.
CORS(app, resources={r"/api/*": {"origins": os.environ.get("CORS_ORIGINS", "*")}})

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: simulate fans out to the paid narrative/speech providers.
# In-memory storage is per-process (with 2 gunicorn workers the effective
# limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_SIMULATE = os.environ.get("RATE_LIMIT_SIMULATE", "30/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Provider wiring
# ---------------------------------------------------------------------------
SETTINGS = ProviderSettings.from_env()

if not SETTINGS.gemini_api_key:
    logger.warning(
        "GEMINI_API_KEY is not set. Simulations will use the template narrative. "
        "For local development, copy .env.example to .env and add your key."
    )
if not SETTINGS.tomtom_api_key:
    logger.warning("TOMTOM_API_KEY is not set. Traffic will be estimated from AQI.")

MAX_HISTORY_LIMIT = 50


def _providers() -> ProviderBundle:
    """Fresh provider clients for this request (sessions are not shared across requests)."""
    return ProviderBundle.from_settings(SETTINGS)


# ---------------------------------------------------------------------------
# Request ID + trace middleware: every request gets an ID and a TraceContext
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = request.headers.get("X-Request-ID") or _generate_request_id()
    set_trace(TraceContext(trace_id=g.request_id))


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


@app.teardown_request
def _teardown_trace(exc):
    trace = get_trace()
    if trace is not None and request.path.startswith("/api/"):
        trace.log_summary()
    clear_trace()


def _error(message, status):
    return jsonify({
        "error": message,
        "request_id": getattr(g, "request_id", "unknown"),
    }), status


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@app.route("/api/block-data")
def block_data():
    """Live block state for one coordinate. Degraded fields still return 200."""
    coordinate = Coordinate.parse(request.args.get("lat"), request.args.get("lon"))
    bundle = _providers()
    block = aggregate(
        coordinate,
        bundle.air_quality,
        bundle.traffic,
        bundle.land_use,
        deadline=SETTINGS.aggregate_deadline,
    )
    logger.info(
        "[api] block-data %s (%.4f, %.4f): aqi=%s density=%s sources=%s",
        g.request_id, coordinate.lat, coordinate.lon,
        block.aqi, block.density_label, block.sources,
    )
    return jsonify(block.to_dict())


@app.route("/api/geocode")
def geocode():
    bundle = _providers()
    try:
        hits = resolve(request.args.get("q", ""), bundle.geocode_primary, bundle.geocode_fallback)
    except LocationNotFound as e:
        return _error(str(e), 404)
    except GeocodeUpstreamError as e:
        logger.warning("[api] geocode %s: %s", g.request_id, e)
        return _error("Geocoding service unavailable", 502)
    return jsonify([h.to_dict() for h in hits])


@app.route("/api/simulate", methods=["POST"])
@limiter.limit(RATE_LIMIT_SIMULATE)
def simulate_route():
    """Run one intervention simulation.

    Only a malformed body is an error (400).  Every provider failure
    degrades in place and still returns 200.
    """
    sim_request = SimulationRequest.parse(request.get_json(silent=True))
    bundle = _providers()

    # Pull 30 days of real AQI history when the client sent a coordinate
    # but no series of its own.
    if sim_request.coordinate is not None and not sim_request.history:
        fetched = bundle.air_quality.fetch_history(
            sim_request.coordinate.lat,
            sim_request.coordinate.lon,
            days=SIMULATION_MODEL.history_days,
        )
        if fetched.ok:
            sim_request = replace(sim_request, history=tuple(clean_series(daily_means(fetched.data))))

    result = simulate(
        sim_request,
        narrative_client=bundle.narrative,
        speech_client=bundle.speech,
        persist=worker.enqueue_simulation,
    )
    logger.info(
        "[api] simulate %s: %s on block %s -> newAQI=%.1f credits=%d fallback=%s",
        g.request_id, result.strategy.name, result.block_id,
        result.new_aqi, result.credits_earned, result.is_fallback_narrative,
    )
    return jsonify(result.to_dict())


@app.route("/api/history")
def history():
    user_id = (request.args.get("userId") or "guest").strip() or "guest"
    try:
        limit = int(request.args.get("limit", 10))
    except (TypeError, ValueError):
        raise InvalidInputError("limit must be an integer")
    limit = max(1, min(limit, MAX_HISTORY_LIMIT))
    return jsonify({"userId": user_id, "simulations": list_simulations(user_id, limit)})


@app.route("/api/simulations/<sim_id>")
def simulation_detail(sim_id):
    sim = get_simulation(sim_id)
    if sim is None:
        return _error("Simulation not found", 404)
    return jsonify(sim)


@app.route("/api/rewards", methods=["GET"])
def reward_history():
    user_id = (request.args.get("userId") or "").strip()
    if not user_id:
        raise InvalidInputError("userId is required")
    return jsonify({"userId": user_id, "rewards": list_rewards(user_id)})


@app.route("/api/rewards", methods=["POST"])
def rewards():
    """Queue a reward record.  MINTED when a transaction hash is supplied."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInputError("Request body must be a JSON object")

    user_id = data.get("userId")
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidInputError("userId is required")
    credits = data.get("credits")
    if isinstance(credits, bool) or not isinstance(credits, int) or credits < 0:
        raise InvalidInputError("credits must be a non-negative integer")
    tx_hash = data.get("txHash") or None
    if tx_hash is not None and not isinstance(tx_hash, str):
        raise InvalidInputError("txHash must be a string")

    record = {
        "user_id": user_id.strip(),
        "total_credits": credits,
        "tx_hash": tx_hash,
        "status": REWARD_MINTED if tx_hash else REWARD_PENDING,
    }
    queued = worker.enqueue_reward(record)
    return jsonify({
        "userId": record["user_id"],
        "credits": credits,
        "txHash": tx_hash,
        "status": record["status"],
        "queued": queued,
    }), 202


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Liveness plus the provider health snapshot. Always 200 while serving."""
    providers = get_status()
    return jsonify({
        "status": overall_status(providers),
        "providers": providers,
        "persistence_queue": worker.pending(),
        "model_version": SIMULATION_MODEL.version,
    })


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(InvalidInputError)
def invalid_input(e):
    return _error(str(e), 400)


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return _error("Too many requests. Please wait and try again.", 429)


@app.errorhandler(HTTPException)
def http_error(e):
    return _error(e.description or e.name, e.code)


@app.errorhandler(500)
def internal_error(e):
    logger.error("[api] Unhandled error in request %s", getattr(g, "request_id", "unknown"))
    return _error("Internal server error", 500)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    # Development: start the persistence worker thread in this process
    worker.start_worker()
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
elif os.environ.get("START_WORKER") == "1":
    try:
        worker.start_worker()
    except Exception:
        logger.exception("Failed to start background worker via START_WORKER=1")
