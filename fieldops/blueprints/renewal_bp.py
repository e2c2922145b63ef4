"""
FieldOps Service Workflow
Renewals Blueprint — stage transitions of renewal items.

Every transition answers 409 with ``details.current_state`` when the
item is not in an allowed stage.
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from fieldops.blueprints import actor_id_from_request, json_body, parse_int
from fieldops.models.renewal import RenewalItem
from fieldops.services import renewal_lifecycle
from fieldops.services.helpers.storage import get_or_raise
from fieldops.utils.helpers import parse_bool

renewal_bp = Blueprint("renewal_bp", __name__, url_prefix="/api/v1/renewals")


@renewal_bp.route("/<int:rid>", methods=["GET"])
def get_renewal(rid):
    item = get_or_raise(RenewalItem, rid)
    return jsonify({**item.to_dict(), "available_actions": renewal_lifecycle.available_actions(item)})


@renewal_bp.route("/<int:rid>/notify-stage1", methods=["POST"])
def notify_stage1(rid):
    data = json_body()
    result = renewal_lifecycle.notify_stage1(
        rid, actor_id_from_request(data),
        recipient_operator_id=parse_int(data.get("recipient_operator_id"), "recipient_operator_id"),
        recipient_email=data.get("recipient_email"),
        send_email=parse_bool(data.get("send_email"), "send_email", default=True),
    )
    return jsonify(result)


@renewal_bp.route("/<int:rid>/confirm", methods=["POST"])
def confirm(rid):
    return jsonify(renewal_lifecycle.confirm(rid, actor_id_from_request(json_body())))


@renewal_bp.route("/<int:rid>/request-invoice", methods=["POST"])
def request_invoice(rid):
    return jsonify(renewal_lifecycle.request_invoice(rid, actor_id_from_request(json_body())))


@renewal_bp.route("/<int:rid>/invoice", methods=["POST"])
def mark_invoiced(rid):
    data = json_body()
    return jsonify(renewal_lifecycle.mark_invoiced(rid, data.get("invoice_number"),
                                                   actor_id_from_request(data)))


@renewal_bp.route("/<int:rid>/not-renewed", methods=["POST"])
def mark_not_renewed(rid):
    return jsonify(renewal_lifecycle.mark_not_renewed(rid, actor_id_from_request(json_body())))
