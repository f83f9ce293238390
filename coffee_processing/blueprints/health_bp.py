"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  simple 200 for load balancers
    GET /api/v1/health/live   database reachability and processing table counts
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from coffee_processing.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

# Core tables reported by the liveness probe
_CORE_TABLES = (
    "processing_methods",
    "processing_stages",
    "processing_batches",
    "processing_progresses",
    "processing_evaluations",
)


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe, always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Core tables ──────────────────────────────────────────────────
    if overall:
        tables = {}
        for tbl in _CORE_TABLES:
            try:
                count = db.session.execute(db.text(f"SELECT COUNT(*) FROM {tbl}")).scalar()
                tables[tbl] = {"status": "ok", "count": count}
            except Exception as exc:
                tables[tbl] = {"status": "error", "detail": str(exc)}
                overall = False
        checks["tables"] = tables

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Coffee Processing Core",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "reconcile_cache": current_app.config.get("RECONCILE_CACHE_ENABLED", True),
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
