"""
FieldOps Service Workflow
Blueprint registry and shared request helpers.

Domain exceptions are mapped to the ``api_error`` envelope once, here,
so views simply let them propagate:

    NotFoundError           → 404 ERR_NOT_FOUND
    ValidationError         → 422 ERR_VALIDATION_INVALID
    PermissionDeniedError   → 403 ERR_FORBIDDEN
    InvalidTransitionError  → 409 ERR_CONFLICT_STATE (details.current_state)
    TransportError          → 502 ERR_TRANSPORT
    StorageError            → 503 ERR_STORAGE
"""

import logging
from datetime import date

from flask import request

from fieldops.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    TransportError,
    ValidationError,
)
from fieldops.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def actor_id_from_request(data: dict | None = None):
    """Acting operator: ``actor_id`` in the body, else the X-Operator-Id header."""
    raw = (data or {}).get("actor_id") or request.headers.get("X-Operator-Id")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError("actor_id must be an integer", details={"actor_id": "invalid"}) from exc


def parse_date(value, field: str, *, required: bool = False) -> date | None:
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required", details={field: "missing"})
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)",
                              details={field: "invalid"}) from exc


def parse_int(value, field: str, *, required: bool = False) -> int | None:
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required", details={field: "missing"})
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"}) from exc


def register_error_handlers(app):
    """Map workflow exceptions to JSON error responses."""

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(E.NOT_FOUND, str(exc))

    @app.errorhandler(ValidationError)
    def _validation(exc):
        code = E.VALIDATION_REQUIRED if "missing" in exc.details.values() else E.VALIDATION_INVALID
        return api_error(code, str(exc), details=exc.details or None)

    @app.errorhandler(PermissionDeniedError)
    def _forbidden(exc):
        return api_error(E.FORBIDDEN, str(exc), details={"action": exc.action})

    @app.errorhandler(InvalidTransitionError)
    def _conflict(exc):
        return api_error(E.CONFLICT_STATE, str(exc),
                         details={"action": exc.action, "current_state": exc.current_state})

    @app.errorhandler(TransportError)
    def _transport(exc):
        logger.warning("Mail transport failure surfaced to caller: %s", exc)
        return api_error(E.TRANSPORT, str(exc), details={"retryable": True})

    @app.errorhandler(StorageError)
    def _storage(exc):
        return api_error(E.STORAGE, str(exc), details={"retryable": True})

    @app.errorhandler(404)
    def _route_not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.BAD_REQUEST, "Method not allowed", status=405)

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": e.description})

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
