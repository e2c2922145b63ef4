"""
FieldOps Service Workflow
Intervention Lifecycle Service.

Manages intervention state transitions with:
  - Transition validation (guard + write in a single conditional UPDATE)
  - Role check on reopen
  - Append-only technical notes
  - Invoice-due alert trigger on a TO_INVOICE close
  - Reopen audit row in the alert log

3 transitions:
  close, reopen, mark_invoiced

Usage:
    from fieldops.services.intervention_lifecycle import close

    result = close(intervention_id=12, outcome="TO_INVOICE", actor_id=4,
                   note="Replaced power supply")
"""

import logging
from datetime import date

from fieldops.core.exceptions import (
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from fieldops.models import db
from fieldops.models.enums import (
    REOPEN_ROLES,
    InterventionState,
    InvoiceOutcome,
    parse_enum,
)
from fieldops.models.intervention import Intervention
from fieldops.services.alert_dispatcher import AlertDispatcher, invoice_due_filter
from fieldops.services.clock import get_clock, org_today
from fieldops.services.helpers.storage import (
    append_note_expr,
    commit_or_raise,
    conditional_update,
    format_note,
    get_or_raise,
)
from fieldops.services.operator_directory import OperatorDirectory

logger = logging.getLogger(__name__)


INTERVENTION_TRANSITIONS = {
    "close": {"from": [InterventionState.OPEN], "to": InterventionState.CLOSED},
    "reopen": {"from": [InterventionState.CLOSED], "to": InterventionState.OPEN},
}


def _reject(intervention_id: int, action: str, reason: str | None = None):
    """Release the failed unit of work and raise with the state actually stored."""
    db.session.rollback()
    iv = get_or_raise(Intervention, intervention_id, fresh=True)
    current = iv.state.value if iv.state else None
    if reason is None and iv.state == InterventionState.CLOSED:
        reason = f"outcome={iv.outcome.value if iv.outcome else None}"
        if iv.invoice_number:
            reason += f", invoiced as {iv.invoice_number}"
    raise InvalidTransitionError("Intervention", intervention_id, action, current, reason)


def _apply(intervention_id: int, action: str, values: dict) -> None:
    rule = INTERVENTION_TRANSITIONS[action]
    applied = conditional_update(
        Intervention, intervention_id,
        where=[Intervention.state.in_(rule["from"])],
        values={"state": rule["to"], **values},
    )
    if not applied:
        _reject(intervention_id, action)


def close(intervention_id: int, outcome, actor_id: int | None, note: str | None = None) -> dict:
    """
    Close an OPEN intervention with a billing outcome.

    A TO_INVOICE close triggers the automatic invoice-due alert once the
    close is committed; delivery problems are reported in ``alerts`` and
    retried by the invoice_due_sweep job.

    Returns:
        {"intervention", "previous_state", "new_state", "alerts"}

    Raises:
        ValidationError, PermissionDeniedError, InvalidTransitionError
    """
    outcome = parse_enum(InvoiceOutcome, outcome, field="outcome")
    actor = OperatorDirectory.resolve_actor(actor_id, action="close interventions")
    get_or_raise(Intervention, intervention_id)

    now = get_clock().now()
    values = {
        "outcome": outcome,
        "closed_at": now,
        "closed_by_operator_id": actor.id,
        "updated_at": now,
    }
    if note and note.strip():
        entry = format_note(f"Closed ({outcome.value}): {note}", now, actor.name)
        values["technical_notes"] = append_note_expr(Intervention.technical_notes, entry)
    _apply(intervention_id, "close", values)
    commit_or_raise("close intervention")

    iv = get_or_raise(Intervention, intervention_id, fresh=True)
    logger.info("Intervention %s closed as %s by operator %s", iv.id, outcome.value, actor.id,
                extra={"entity_id": iv.id})

    alerts = None
    if outcome == InvoiceOutcome.TO_INVOICE:
        alerts = AlertDispatcher.dispatch_invoice_due(iv)

    return {
        "intervention": iv.to_dict(),
        "previous_state": InterventionState.OPEN.value,
        "new_state": InterventionState.CLOSED.value,
        "alerts": alerts,
    }


def reopen(intervention_id: int, actor_id: int | None) -> dict:
    """
    Reopen a CLOSED, not yet invoiced intervention.

    Only SUPERVISOR and PROJECT_MANAGER may reopen. The audit row is
    written to the alert log in the same transaction (no email).
    """
    actor = OperatorDirectory.resolve_actor(actor_id, action="reopen interventions")
    if actor.role not in REOPEN_ROLES:
        raise PermissionDeniedError(
            actor.id, "reopen interventions",
            f"role {actor.role.value} is not one of {sorted(r.value for r in REOPEN_ROLES)}",
        )
    get_or_raise(Intervention, intervention_id)

    now = get_clock().now()
    entry = format_note("Reopened", now, actor.name)
    applied = conditional_update(
        Intervention, intervention_id,
        where=[Intervention.state == InterventionState.CLOSED,
               Intervention.invoice_number.is_(None)],
        values={
            "state": InterventionState.OPEN,
            "outcome": None,
            "closed_at": None,
            "closed_by_operator_id": None,
            "technical_notes": append_note_expr(Intervention.technical_notes, entry),
            "updated_at": now,
        },
    )
    if not applied:
        _reject(intervention_id, "reopen")

    iv = get_or_raise(Intervention, intervention_id, fresh=True)
    AlertDispatcher.record_reopen_audit(iv, actor)
    commit_or_raise("reopen intervention")
    logger.info("Intervention %s reopened by operator %s", iv.id, actor.id, extra={"entity_id": iv.id})

    return {
        "intervention": iv.to_dict(),
        "previous_state": InterventionState.CLOSED.value,
        "new_state": InterventionState.OPEN.value,
    }


def mark_invoiced(intervention_id: int, invoice_number: str | None,
                  invoiced_on: date | None = None) -> dict:
    """
    Record the issued invoice on a CLOSED / TO_INVOICE intervention.

    ``invoiced_on`` defaults to today in the organizational timezone.

    Raises:
        ValidationError: blank invoice number.
        InvalidTransitionError: wrong outcome, still open, or already invoiced.
    """
    number = (invoice_number or "").strip()
    if not number:
        raise ValidationError("invoice_number is required", details={"invoice_number": "missing"})
    get_or_raise(Intervention, intervention_id)

    applied = conditional_update(
        Intervention, intervention_id,
        where=list(invoice_due_filter()),
        values={
            "invoice_number": number,
            "invoiced_on": invoiced_on or org_today(),
            "updated_at": get_clock().now(),
        },
    )
    if not applied:
        _reject(intervention_id, "mark_invoiced")
    commit_or_raise("mark intervention invoiced")

    iv = get_or_raise(Intervention, intervention_id, fresh=True)
    logger.info("Intervention %s invoiced as %s", iv.id, number, extra={"entity_id": iv.id})
    return {"intervention": iv.to_dict()}


def invoice_due_query():
    """CLOSED, TO_INVOICE and not yet invoiced: the backlog every invoice alert draws on."""
    return Intervention.query.filter(*invoice_due_filter()).order_by(
        Intervention.closed_at.asc(), Intervention.id.asc(),
    )
