import os
import logging
import uuid
from datetime import datetime, timezone
from urllib.parse import urlparse

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from ha_trace import TraceContext, set_trace, clear_trace
from models import ResultCache
from property_evaluator import (
    AggregationImpossible,
    AnalysisContext,
    AnalysisTimeout,
    SourceUnavailable,
    analyze_url,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions
    from google_maps import GeoProviderUnavailable
    from vision_client import ClassifierUnavailable

    _EXPECTED_FAILURES = (
        AnalysisTimeout,
        SourceUnavailable,
        GeoProviderUnavailable,
        ClassifierUnavailable,
        requests.exceptions.RequestException,
    )

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            if exc_type is not None and issubclass(exc_type, _EXPECTED_FAILURES):
                sentry_sdk.add_breadcrumb(
                    category=exc_type.__name__,
                    message=str(exc_value) if exc_value else "",
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Proxy fix: most PaaS run behind a reverse proxy that sets
# X-Forwarded-For.  ProxyFix rewrites request.remote_addr to the real
# client IP so both Flask-Limiter and logging see the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: listing analyses call paid APIs.
# In-memory storage is per-process (with 2 gunicorn workers the effective
# limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_ANALYZE = os.environ.get("RATE_LIMIT_ANALYZE", "10/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

REQUIRED_URL_DOMAIN = os.environ.get("REQUIRED_URL_DOMAIN", "rightmove.co.uk")

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "GP and transport scores will report no data until it is configured."
    )
if not os.environ.get("ANTHROPIC_API_KEY"):
    logger.warning(
        "ANTHROPIC_API_KEY is not set. "
        "Certificate, floorplan and photo checks fall back to text only."
    )


def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    if not os.environ.get("ANTHROPIC_API_KEY"):
        missing.append("ANTHROPIC_API_KEY")
    return (len(missing) == 0, missing)


def validate_listing_url(url):
    """Return an error message for an unacceptable listing URL, else None."""
    if not isinstance(url, str) or not url.strip():
        return "A listing URL is required"
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return "Invalid URL"
    host = parsed.netloc.lower().split(":", 1)[0]
    if host != REQUIRED_URL_DOMAIN and not host.endswith("." + REQUIRED_URL_DOMAIN):
        return f"Only {REQUIRED_URL_DOMAIN} listings are supported"
    return None


_result_cache = None


def get_result_cache():
    """Process-wide result cache, created on first use."""
    global _result_cache
    if _result_cache is None:
        _result_cache = ResultCache()
    return _result_cache


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/api/analyze", methods=["POST"])
@limiter.limit(RATE_LIMIT_ANALYZE)
def api_analyze():
    """Analyse one listing.

    Accepts JSON: {"url": "https://www.rightmove.co.uk/properties/..."}
    Returns the analysis payload, or {"error": ...} with 400/500.
    """
    data = request.get_json(silent=True) or {}
    url = data.get("url")
    problem = validate_listing_url(url)
    if problem:
        return jsonify({"error": problem}), 400
    url = url.strip()

    request_id = getattr(g, "request_id", "unknown")
    trace_ctx = TraceContext(trace_id=request_id)
    set_trace(trace_ctx)
    try:
        payload = analyze_url(url, AnalysisContext.from_env(), cache=get_result_cache())
        trace_ctx.log_summary()
        return jsonify(payload)
    except SourceUnavailable as e:
        trace_ctx.log_summary()
        logger.warning("[%s] Listing unavailable: %s", request_id, e)
        return jsonify({"error": f"Could not fetch the listing: {e}"}), 500
    except AnalysisTimeout as e:
        trace_ctx.log_summary()
        logger.warning("[%s] %s", request_id, e)
        return jsonify({"error": "The analysis took too long. Please try again."}), 500
    except AggregationImpossible as e:
        trace_ctx.log_summary()
        logger.warning("[%s] %s", request_id, e)
        return jsonify({"error": str(e)}), 500
    except Exception:
        trace_ctx.log_summary()
        logger.exception("[%s] Analysis failed for %s", request_id, url)
        return jsonify({"error": "Analysis failed"}), 500
    finally:
        clear_trace()


@app.route("/health")
@limiter.exempt
def health():
    """Liveness probe."""
    return jsonify({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


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

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "error": "Too many requests. Please wait and try again.",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({"error": "Method not allowed"}), 405


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
