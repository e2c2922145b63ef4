"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — liveness, always 200 if the app is running
    GET /api/v1/health/ready  — readiness: database reachable, mail mode
"""

import logging
import time

from flask import Blueprint, jsonify

from fieldops.models import db
from fieldops.services.email_service import EmailService

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def live():
    return jsonify({"status": "ok", "app": "FieldOps Service Workflow"}), 200


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe with dependency status."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        # Any driver error means "not ready"; the probe must answer, not raise
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    checks["mail"] = {"status": "smtp" if EmailService.is_configured() else "log_only"}

    status_code = 200 if overall else 503
    return jsonify({
        "status": "ready" if overall else "degraded",
        "checks": checks,
    }), status_code
