"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — detailed health (database, stage tables)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from app.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")

_ENGINE_TABLES = (
    "tenants", "job_stages", "stage_questions", "stage_transitions",
    "jobs", "stage_responses", "pending_stage_transitions", "stage_audit_log",
)


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
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
        logger.error("Health check — database failed: %s", exc)

    # ── Engine tables ────────────────────────────────────────────────
    if overall:
        missing = []
        for table in _ENGINE_TABLES:
            try:
                db.session.execute(db.text(f"SELECT 1 FROM {table} LIMIT 1"))
            except Exception:
                db.session.rollback()
                missing.append(table)
        checks["tables"] = {"status": "ok"} if not missing else {"status": "error", "missing": missing}
        overall = overall and not missing

    checks["app"] = {
        "name": "Job Progression Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
