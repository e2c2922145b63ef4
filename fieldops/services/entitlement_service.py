"""
FieldOps Service Workflow
Entitlement Service — included vs. consumed interventions per contract.

The consumed count is never stored: it is recomputed from the
interventions table on every insertion, under a row lock on the contract,
so concurrent inserts cannot both take the last included slot.

Usage:
    from fieldops.services.entitlement_service import add_intervention

    result = add_intervention(
        contract_id=3, installation_id=7, performed_on=date(2026, 10, 19),
        description="Replaced player", requested_included=True,
    )
    result["intervention"]["included"], result["note"]
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import func, select

from fieldops.core.exceptions import NotFoundError, ValidationError
from fieldops.models import db
from fieldops.models.client import Contract, Installation
from fieldops.models.intervention import Intervention
from fieldops.services.clock import get_clock, org_today
from fieldops.services.helpers.storage import commit_or_raise, format_note, get_or_raise

logger = logging.getLogger(__name__)

DOWNGRADE_NOTE = "auto-downgraded: quota exhausted"
UNLIMITED = "unlimited"


def classify(contract: Contract, consumed_included_count: int,
             requested_included: bool) -> tuple[bool, str | None]:
    """Decide whether a new intervention counts against the quota.

    Returns:
        (final_included, note) where note is set only on a forced downgrade.
    """
    if contract.unlimited:
        return requested_included, None
    if contract.included_quota is None:
        return requested_included, None
    if requested_included and consumed_included_count >= contract.included_quota:
        return False, DOWNGRADE_NOTE
    return requested_included, None


def consumed_included_count(contract_id: int) -> int:
    """Interventions flagged included under the contract, whatever their state."""
    return db.session.query(func.count(Intervention.id)).filter(
        Intervention.contract_id == contract_id,
        Intervention.included.is_(True),
    ).scalar() or 0


def residual_entitlement(contract: Contract, consumed: int | None = None) -> int | str | None:
    if contract.unlimited:
        return UNLIMITED
    if contract.included_quota is None:
        return None
    if consumed is None:
        consumed = consumed_included_count(contract.id)
    return max(0, contract.included_quota - consumed)


def active_contract_for_client(client_id: int, today: date | None = None) -> Contract | None:
    """
    Active contract for a client.

    Evergreen (no expiry) wins; otherwise the soonest non-expired one;
    if every contract has expired, the most recently created.
    """
    today = today or org_today()
    contracts = Contract.query.filter_by(client_id=client_id).all()
    if not contracts:
        return None

    def _newest(c):
        return (c.created_at is not None, c.created_at, c.id)

    evergreen = [c for c in contracts if c.expires_on is None]
    if evergreen:
        return max(evergreen, key=_newest)
    unexpired = [c for c in contracts if c.expires_on >= today]
    if unexpired:
        return min(unexpired, key=lambda c: (c.expires_on, c.id))
    return max(contracts, key=_newest)


def entitlement_summary(contract: Contract) -> dict:
    consumed = consumed_included_count(contract.id)
    return {
        "contract_id": contract.id,
        "client_id": contract.client_id,
        "plan_code": contract.plan_code,
        "unlimited": bool(contract.unlimited),
        "included_quota": contract.included_quota,
        "consumed": consumed,
        "residual": residual_entitlement(contract, consumed),
    }


def add_intervention(
    *,
    installation_id: int,
    performed_on: date,
    contract_id: int | None = None,
    description: str = "",
    requested_included: bool = False,
    proforma: str | None = None,
    warehouse_code: str | None = None,
    notes: str | None = None,
) -> dict:
    """
    Insert an intervention, classifying it against the contract quota.

    When ``contract_id`` is omitted the client's active contract is used.

    Returns:
        {"intervention": {...}, "downgraded": bool, "note": str|None,
         "entitlement": {...}}

    Raises:
        NotFoundError: unknown installation / contract, or no contract for the client.
        ValidationError: contract and installation belong to different clients.
    """
    installation = get_or_raise(Installation, installation_id)
    if performed_on is None:
        raise ValidationError("performed_on is required", details={"performed_on": "missing"})

    if contract_id is None:
        active = active_contract_for_client(installation.client_id)
        if active is None:
            raise NotFoundError(resource="Contract", resource_id=f"client={installation.client_id}")
        contract_id = active.id

    # Row lock serialises concurrent inserts against the same quota
    contract = db.session.execute(
        select(Contract)
        .where(Contract.id == contract_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if contract is None:
        raise NotFoundError(resource="Contract", resource_id=contract_id)
    if contract.client_id != installation.client_id:
        raise ValidationError(
            "Installation and contract belong to different clients",
            details={"contract_id": "client mismatch"},
        )

    consumed = consumed_included_count(contract.id)
    included, note = classify(contract, consumed, bool(requested_included))

    intervention = Intervention(
        contract_id=contract.id,
        installation_id=installation.id,
        performed_on=performed_on,
        description=(description or "").strip(),
        included=included,
        proforma=proforma or installation.proforma,
        warehouse_code=warehouse_code or installation.warehouse_code,
        notes=notes,
        technical_notes=format_note(note, get_clock().now()) if note else None,
    )
    db.session.add(intervention)
    commit_or_raise("add intervention")

    if note:
        logger.info(
            "Intervention %s downgraded to extra: contract=%s consumed=%s quota=%s",
            intervention.id, contract.id, consumed, contract.included_quota,
        )

    return {
        "intervention": intervention.to_dict(),
        "downgraded": note is not None,
        "note": note,
        "entitlement": entitlement_summary(contract),
    }
