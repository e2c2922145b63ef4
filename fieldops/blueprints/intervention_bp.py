"""
FieldOps Service Workflow
Interventions & Entitlement Blueprint.

Provides:
    - Intervention creation with quota classification
    - Lifecycle transitions: close, reopen, mark invoiced
    - Invoice-due backlog
    - Contract entitlement summary / client active contract
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from fieldops.blueprints import actor_id_from_request, json_body, parse_date, parse_int
from fieldops.models.client import Contract
from fieldops.models.intervention import Intervention
from fieldops.services import entitlement_service, intervention_lifecycle
from fieldops.services.helpers.storage import get_or_raise
from fieldops.utils.errors import E, api_error
from fieldops.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

intervention_bp = Blueprint("intervention_bp", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  INTERVENTIONS
# ═══════════════════════════════════════════════════════════════════════════

@intervention_bp.route("/interventions", methods=["POST"])
def create_intervention():
    """Create an intervention; a requested 'included' may be downgraded to extra."""
    data = json_body()
    result = entitlement_service.add_intervention(
        installation_id=parse_int(data.get("installation_id"), "installation_id", required=True),
        contract_id=parse_int(data.get("contract_id"), "contract_id"),
        performed_on=parse_date(data.get("performed_on"), "performed_on", required=True),
        description=data.get("description", ""),
        requested_included=parse_bool(data.get("included"), "included", default=False),
        proforma=data.get("proforma"),
        warehouse_code=data.get("warehouse_code"),
        notes=data.get("notes"),
    )
    return jsonify(result), 201


@intervention_bp.route("/interventions/<int:iid>", methods=["GET"])
def get_intervention(iid):
    return jsonify(get_or_raise(Intervention, iid).to_dict())


@intervention_bp.route("/interventions/<int:iid>/close", methods=["POST"])
def close_intervention(iid):
    data = json_body()
    result = intervention_lifecycle.close(
        iid, data.get("outcome"), actor_id_from_request(data), note=data.get("note"),
    )
    return jsonify(result)


@intervention_bp.route("/interventions/<int:iid>/reopen", methods=["POST"])
def reopen_intervention(iid):
    data = json_body()
    return jsonify(intervention_lifecycle.reopen(iid, actor_id_from_request(data)))


@intervention_bp.route("/interventions/<int:iid>/invoice", methods=["POST"])
def mark_intervention_invoiced(iid):
    data = json_body()
    result = intervention_lifecycle.mark_invoiced(
        iid, data.get("invoice_number"), parse_date(data.get("invoiced_on"), "invoiced_on"),
    )
    return jsonify(result)


@intervention_bp.route("/interventions/invoice-due", methods=["GET"])
def list_invoice_due():
    """CLOSED / TO_INVOICE interventions without an invoice number."""
    query = intervention_lifecycle.invoice_due_query()
    client_id = request.args.get("client_id", type=int)
    if client_id is not None:
        query = query.join(Contract, Intervention.contract_id == Contract.id).filter(
            Contract.client_id == client_id,
        )
    items = query.all()
    return jsonify({"items": [iv.to_dict() for iv in items], "total": len(items)})


# ═══════════════════════════════════════════════════════════════════════════
#  ENTITLEMENT
# ═══════════════════════════════════════════════════════════════════════════

@intervention_bp.route("/contracts/<int:cid>/entitlement", methods=["GET"])
def contract_entitlement(cid):
    contract = get_or_raise(Contract, cid)
    return jsonify(entitlement_service.entitlement_summary(contract))


@intervention_bp.route("/clients/<int:client_id>/active-contract", methods=["GET"])
def client_active_contract(client_id):
    contract = entitlement_service.active_contract_for_client(client_id)
    if contract is None:
        return api_error(E.NOT_FOUND, f"No contract for client {client_id}")
    return jsonify({
        "contract": contract.to_dict(),
        "entitlement": entitlement_service.entitlement_summary(contract),
    })
