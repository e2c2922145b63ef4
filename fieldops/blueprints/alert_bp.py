"""
FieldOps Service Workflow
Alerts Blueprint — manual sends and the alert log.

Provides:
    - Free-form manual alert (operator or typed email, optional log-only)
    - Single invoice-due alert (pre-rendered, editable)
    - Bulk invoice-due alert per client (preview + send)
    - Alert log listing
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from fieldops.blueprints import actor_id_from_request, json_body, parse_int
from fieldops.models.enums import AlertChannel, parse_enum
from fieldops.services.alert_dispatcher import AlertDispatcher
from fieldops.utils.helpers import parse_bool

alert_bp = Blueprint("alert_bp", __name__, url_prefix="/api/v1/alerts")


def _recipient_kwargs(data: dict) -> dict:
    return {
        "recipient_operator_id": parse_int(data.get("recipient_operator_id"), "recipient_operator_id"),
        "recipient_email": data.get("recipient_email"),
        "send_email": parse_bool(data.get("send_email"), "send_email", default=True),
    }


@alert_bp.route("/send", methods=["POST"])
def send_alert():
    """Manual alert. ``send_email: false`` records it without mailing."""
    data = json_body()
    entry = AlertDispatcher.send_manual(
        sender_id=actor_id_from_request(data),
        message=data.get("message"),
        subject=data.get("subject"),
        client_id=parse_int(data.get("client_id"), "client_id"),
        entity_type=str(data.get("entity_type") or ""),
        entity_id=parse_int(data.get("entity_id"), "entity_id"),
        **_recipient_kwargs(data),
    )
    return jsonify(entry), 201


@alert_bp.route("/invoice-due/<int:iid>/preview", methods=["GET"])
def preview_invoice_due(iid):
    msg = AlertDispatcher.compose_invoice_due(iid)
    return jsonify({"subject": msg.subject, "text": msg.text, "html": msg.html})


@alert_bp.route("/invoice-due/<int:iid>", methods=["POST"])
def send_invoice_due(iid):
    data = json_body()
    entry = AlertDispatcher.send_invoice_due(
        sender_id=actor_id_from_request(data),
        intervention_id=iid,
        message=data.get("message"),
        subject=data.get("subject"),
        **_recipient_kwargs(data),
    )
    return jsonify(entry), 201


@alert_bp.route("/bulk-invoice/preview", methods=["GET"])
def preview_bulk_invoice():
    client_id = parse_int(request.args.get("client_id"), "client_id", required=True)
    ids = [int(v) for v in request.args.getlist("intervention_id") if v.isdigit()] or None
    msg, items = AlertDispatcher.compose_bulk_invoice(client_id, ids)
    return jsonify({
        "subject": msg.subject,
        "text": msg.text,
        "html": msg.html,
        "intervention_ids": [iv.id for iv in items],
    })


@alert_bp.route("/bulk-invoice", methods=["POST"])
def send_bulk_invoice():
    data = json_body()
    raw_ids = data.get("intervention_ids") or None
    entry = AlertDispatcher.send_bulk_invoice(
        sender_id=actor_id_from_request(data),
        client_id=parse_int(data.get("client_id"), "client_id", required=True),
        intervention_ids=[parse_int(v, "intervention_ids") for v in raw_ids] if raw_ids else None,
        message=data.get("message"),
        subject=data.get("subject"),
        **_recipient_kwargs(data),
    )
    return jsonify(entry), 201


@alert_bp.route("/log", methods=["GET"])
def list_alert_log():
    channel = request.args.get("channel")
    rows = AlertDispatcher.list_log(
        channel=parse_enum(AlertChannel, channel, field="channel") if channel else None,
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id", type=int),
        limit=min(request.args.get("limit", 100, type=int), 1000),
    )
    return jsonify({"items": rows, "total": len(rows)})
