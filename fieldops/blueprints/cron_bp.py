"""
FieldOps Service Workflow
Cron Blueprint — external trigger for the scheduler.

Endpoints (all require CRON_SECRET):
    POST /api/v1/cron/tick             run every registered job
    POST /api/v1/cron/jobs/<job_name>  run one job
    GET  /api/v1/cron/jobs             registry + run history

The secret is accepted as ``Authorization: Bearer <secret>``, an
``X-Cron-Secret`` header or a ``secret`` query parameter.
"""

from __future__ import annotations

import hmac
import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from fieldops.services.scheduler_service import SchedulerService, get_registered_jobs
from fieldops.utils.errors import E, api_error

logger = logging.getLogger(__name__)

cron_bp = Blueprint("cron_bp", __name__, url_prefix="/api/v1/cron")


def _presented_secret() -> str:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.headers.get("X-Cron-Secret") or request.args.get("secret") or ""


def cron_secret_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        if not expected:
            return api_error(E.FORBIDDEN, "Cron trigger disabled: CRON_SECRET is not configured")
        if not hmac.compare_digest(_presented_secret().encode("utf-8"), str(expected).encode("utf-8")):
            logger.warning("Rejected cron call from %s", request.remote_addr)
            return api_error(E.UNAUTHORIZED, "Invalid cron secret")
        return fn(*args, **kwargs)
    return wrapper


@cron_bp.route("/tick", methods=["POST"])
@cron_secret_required
def tick():
    results = SchedulerService.run_all()
    failed = [r["job_name"] for r in results if r["status"] == "failed"]
    return jsonify({"jobs": results, "failed": failed}), (500 if failed else 200)


@cron_bp.route("/jobs/<job_name>", methods=["POST"])
@cron_secret_required
def run_job(job_name):
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    result = SchedulerService.run_job(job_name, force=request.args.get("force") == "1")
    return jsonify(result), (500 if result["status"] == "failed" else 200)


@cron_bp.route("/jobs", methods=["GET"])
@cron_secret_required
def list_jobs():
    return jsonify({"jobs": SchedulerService.list_jobs()})
