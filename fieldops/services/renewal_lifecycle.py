"""
FieldOps Service Workflow
Renewal Lifecycle Service.

Stage flow:
    TO_NOTIFY → NOTIFIED → CONFIRMED → TO_INVOICE → INVOICED
    NOT_RENEWED from any stage except INVOICED and itself

Every transition is one conditional UPDATE (``WHERE stage IN (...)``);
when no row matches, the stored stage is re-read and reported in the
InvalidTransitionError.

Usage:
    from fieldops.services.renewal_lifecycle import confirm, request_invoice

    confirm(item_id=9, actor_id=4)
    result = request_invoice(item_id=9, actor_id=4)
    result["stage2"]["sent"]
"""

import logging
from datetime import timedelta

from flask import current_app

from fieldops.core.exceptions import InvalidTransitionError, TransportError, ValidationError
from fieldops.models import db
from fieldops.models.enums import RenewalStage
from fieldops.models.renewal import RenewalItem
from fieldops.services.alert_dispatcher import AlertDispatcher
from fieldops.services.clock import get_clock, org_today
from fieldops.services.helpers.storage import commit_or_raise, conditional_update, get_or_raise
from fieldops.services.operator_directory import OperatorDirectory

logger = logging.getLogger(__name__)

_NON_TERMINAL = [RenewalStage.TO_NOTIFY, RenewalStage.NOTIFIED,
                 RenewalStage.CONFIRMED, RenewalStage.TO_INVOICE]

RENEWAL_TRANSITIONS = {
    "notify_stage1": {"from": [RenewalStage.TO_NOTIFY], "to": RenewalStage.NOTIFIED},
    "confirm": {"from": [RenewalStage.TO_NOTIFY, RenewalStage.NOTIFIED], "to": RenewalStage.CONFIRMED},
    "request_invoice": {"from": [RenewalStage.CONFIRMED], "to": RenewalStage.TO_INVOICE},
    "mark_invoiced": {"from": [RenewalStage.TO_INVOICE], "to": RenewalStage.INVOICED},
    "mark_not_renewed": {"from": _NON_TERMINAL, "to": RenewalStage.NOT_RENEWED},
}


def validate_renewal_transition(item: RenewalItem, action: str) -> dict:
    """Validate whether an action is valid for the item's current stage."""
    rule = RENEWAL_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": item.stage.value, "to": None,
                "reason": f"Unknown action: {action}"}
    if item.stage not in rule["from"]:
        return {"valid": False, "from": item.stage.value, "to": rule["to"].value,
                "reason": f"Cannot '{action}' from stage '{item.stage.value}'"}
    return {"valid": True, "from": item.stage.value, "to": rule["to"].value, "reason": None}


def available_actions(item: RenewalItem) -> list[str]:
    return [a for a in RENEWAL_TRANSITIONS if validate_renewal_transition(item, a)["valid"]]


def _transition(item_id: int, action: str, values: dict) -> RenewalItem:
    """Apply ``action`` in the current unit of work (not committed)."""
    rule = RENEWAL_TRANSITIONS[action]
    previous = get_or_raise(RenewalItem, item_id).stage
    applied = conditional_update(
        RenewalItem, item_id,
        where=[RenewalItem.stage.in_(rule["from"])],
        values={"stage": rule["to"], "updated_at": get_clock().now(), **values},
    )
    if not applied:
        db.session.rollback()
        item = get_or_raise(RenewalItem, item_id, fresh=True)
        raise InvalidTransitionError(
            "RenewalItem", item_id, action, item.stage.value,
            f"allowed from {[s.value for s in rule['from']]}",
        )
    logger.info("Renewal %s: %s %s → %s", item_id, action, previous.value, rule["to"].value,
                extra={"entity_id": item_id})
    return get_or_raise(RenewalItem, item_id, fresh=True)


def _result(item: RenewalItem, previous: RenewalStage, **extra) -> dict:
    return {
        "item": item.to_dict(),
        "previous_stage": previous.value,
        "new_stage": item.stage.value,
        **extra,
    }


def notify_stage1(item_id: int, actor_id: int | None, *,
                  recipient_operator_id: int | None = None,
                  recipient_email: str | None = None,
                  send_email: bool = True) -> dict:
    """
    Send the "please confirm renewal" notice and move to NOTIFIED.

    The stage change and its alert log row commit together, after the
    mail is accepted; a transport failure rolls both back.

    Raises:
        ValidationError, PermissionDeniedError, InvalidTransitionError, TransportError
    """
    sender = OperatorDirectory.resolve_actor(actor_id, action="notify renewals")
    item = get_or_raise(RenewalItem, item_id)
    recipient = AlertDispatcher.resolve_manual_recipient(
        recipient_operator_id=recipient_operator_id,
        recipient_email=recipient_email,
        client_id=item.client_id,
    )
    previous = item.stage

    item = _transition(item_id, "notify_stage1", {
        "stage1_notified_at": get_clock().now(),
        "stage1_recipient": recipient.email,
    })
    try:
        entry = AlertDispatcher.send_renewal_stage1(item, sender=sender, recipient=recipient,
                                                    send_email=send_email)
    except TransportError:
        db.session.rollback()
        logger.warning("Renewal %s stage-1 delivery failed; stage left at %s", item_id, previous.value,
                       extra={"entity_id": item_id})
        raise
    commit_or_raise("notify renewal stage 1")
    return _result(item, previous, alert=entry.to_dict())


def confirm(item_id: int, actor_id: int | None) -> dict:
    actor = OperatorDirectory.resolve_actor(actor_id, action="confirm renewals")
    previous = get_or_raise(RenewalItem, item_id).stage
    item = _transition(item_id, "confirm", {
        "confirmed_by_operator_id": actor.id,
        "confirmed_at": get_clock().now(),
    })
    commit_or_raise("confirm renewal")
    return _result(item, previous)


def request_invoice(item_id: int, actor_id: int | None) -> dict:
    """
    Move a CONFIRMED item to TO_INVOICE and announce it (stage 2).

    The stage-2 notice goes out after the transition commits and is
    claimed on ``stage2_notified_at``, so it is sent exactly once; a
    failed delivery is reported in ``stage2`` and retried by the
    renewal_stage2_sweep job.
    """
    OperatorDirectory.resolve_actor(actor_id, action="request renewal invoices")
    previous = get_or_raise(RenewalItem, item_id).stage
    item = _transition(item_id, "request_invoice", {"invoice_requested_at": get_clock().now()})
    commit_or_raise("request renewal invoice")

    stage2 = AlertDispatcher.dispatch_renewal_stage2([item])
    item = get_or_raise(RenewalItem, item_id, fresh=True)
    return _result(item, previous, stage2=stage2)


def mark_invoiced(item_id: int, invoice_number: str | None, actor_id: int | None) -> dict:
    number = (invoice_number or "").strip()
    if not number:
        raise ValidationError("invoice_number is required", details={"invoice_number": "missing"})
    OperatorDirectory.resolve_actor(actor_id, action="invoice renewals")
    previous = get_or_raise(RenewalItem, item_id).stage
    item = _transition(item_id, "mark_invoiced", {
        "invoice_number": number,
        "invoiced_at": get_clock().now(),
    })
    commit_or_raise("mark renewal invoiced")
    return _result(item, previous)


def mark_not_renewed(item_id: int, actor_id: int | None) -> dict:
    OperatorDirectory.resolve_actor(actor_id, action="close renewals")
    previous = get_or_raise(RenewalItem, item_id).stage
    item = _transition(item_id, "mark_not_renewed", {"not_renewed_at": get_clock().now()})
    commit_or_raise("mark renewal not renewed")
    return _result(item, previous)


def pending_stage2_by_client() -> dict[int, list[RenewalItem]]:
    """TO_INVOICE items whose stage-2 notice was never sent, grouped by client."""
    rows = (
        RenewalItem.query
        .filter(RenewalItem.stage == RenewalStage.TO_INVOICE,
                RenewalItem.stage2_notified_at.is_(None))
        .order_by(RenewalItem.client_id.asc(), RenewalItem.due_date.asc(), RenewalItem.id.asc())
        .all()
    )
    grouped: dict[int, list[RenewalItem]] = {}
    for row in rows:
        grouped.setdefault(row.client_id, []).append(row)
    return grouped


def due_reminders(today=None, thresholds=None) -> list[tuple[RenewalItem, int]]:
    """
    Non-terminal items whose due date is exactly one of ``thresholds``
    days away (RENEWAL_REMINDER_DAYS, default 60/30/15).

    Returns:
        ``(item, days)`` pairs ordered by due date.
    """
    today = today or org_today()
    thresholds = sorted(set(thresholds or current_app.config.get("RENEWAL_REMINDER_DAYS") or [60, 30, 15]))
    if not thresholds:
        return []
    rows = (
        RenewalItem.query
        .filter(RenewalItem.stage.in_(_NON_TERMINAL),
                RenewalItem.due_date.isnot(None),
                RenewalItem.due_date >= today,
                RenewalItem.due_date <= today + timedelta(days=thresholds[-1]))
        .order_by(RenewalItem.due_date.asc(), RenewalItem.id.asc())
        .all()
    )
    return [(row, (row.due_date - today).days) for row in rows
            if (row.due_date - today).days in thresholds]
