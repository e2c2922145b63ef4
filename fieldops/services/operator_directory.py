"""
FieldOps Service Workflow
Operator directory — read-only lookups and alert recipient eligibility.

Eligibility for a role-scoped automatic channel:
    active AND alerts_enabled AND (
        subscribed to the topic
        OR subscribed to all status changes
        OR role whitelisted for the channel
    )
Client-scoped manual channels additionally require the operator's
assigned client (when set) to match.
"""

from __future__ import annotations

import logging

from email_validator import EmailNotValidError, validate_email
from flask import current_app

from fieldops.core.exceptions import PermissionDeniedError, ValidationError
from fieldops.models.enums import AlertChannel, OperatorRole
from fieldops.models.operator import Operator
from fieldops.services.helpers.storage import get_or_raise

logger = logging.getLogger(__name__)


def normalize_target(value) -> str:
    """Canonical audience tag: upper case, '-'/' ' folded to '_'."""
    raw = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
    return raw or "GENERAL"


def normalize_email(value: str | None) -> str:
    """Validate syntax only (no DNS lookups) and return the normalized address.

    Raises:
        ValidationError: when the address is missing or malformed.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValidationError("Recipient email is required", details={"email": "missing"})
    try:
        info = validate_email(raw, check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError(f"Invalid email address: {raw}", details={"email": str(exc)}) from exc
    return info.normalized.lower()


def is_valid_email(value: str | None) -> bool:
    try:
        normalize_email(value)
    except ValidationError:
        return False
    return True


def _channel_role_whitelist() -> dict[AlertChannel, set[str]]:
    invoice_roles = set(current_app.config.get("INVOICE_ALERT_ROLES") or [OperatorRole.ADMINISTRATION.value])
    return {
        AlertChannel.AUTOMATIC_INVOICE_DUE: invoice_roles,
        AlertChannel.INVOICE_DUE: invoice_roles,
        AlertChannel.BULK_INVOICE_DUE: invoice_roles,
    }


class OperatorDirectory:
    """Stateless lookups over the ``operators`` table."""

    @staticmethod
    def get(operator_id: int) -> Operator:
        return get_or_raise(Operator, operator_id)

    @staticmethod
    def resolve_actor(operator_id: int | None, *, action: str) -> Operator:
        """Resolve the acting operator; inactive operators may not act."""
        if operator_id is None:
            raise ValidationError("Acting operator is required", details={"actor_id": "missing"})
        op = get_or_raise(Operator, operator_id)
        if not op.is_active:
            raise PermissionDeniedError(operator_id, action, "operator is inactive")
        return op

    @staticmethod
    def list_active() -> list[Operator]:
        return (
            Operator.query.filter_by(is_active=True)
            .order_by(Operator.name.asc(), Operator.id.asc())
            .all()
        )

    @staticmethod
    def is_eligible(
        op: Operator,
        *,
        topic: str,
        roles: set[str] | None = None,
        client_id: int | None = None,
    ) -> bool:
        if not op.is_active or not op.alerts_enabled:
            return False
        if client_id is not None and op.client_id is not None and op.client_id != client_id:
            return False
        role = op.role.value if op.role else ""
        return (
            op.is_subscribed_to(topic)
            or bool(op.all_status_changes)
            or (role in (roles or set()))
        )

    @classmethod
    def eligible_recipients(
        cls,
        channel: AlertChannel,
        *,
        topic: str | None = None,
        extra_roles: set[str] | None = None,
        client_id: int | None = None,
    ) -> list[Operator]:
        """Operators eligible for ``channel``, sorted by email.

        The stable order matters: concurrent dispatchers walk recipients in
        the same sequence so they collide on the first dedup key.
        """
        roles = set(_channel_role_whitelist().get(channel, set()))
        roles |= set(extra_roles or set())
        topic = topic or channel.value
        out = []
        seen = set()
        for op in cls.list_active():
            if not cls.is_eligible(op, topic=topic, roles=roles, client_id=client_id):
                continue
            if not is_valid_email(op.email):
                logger.warning("Operator %s eligible for %s has no valid email", op.id, channel.value)
                continue
            key = op.email.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            out.append(op)
        return sorted(out, key=lambda o: o.email.strip().lower())

    @classmethod
    def default_recipient(cls, role) -> Operator | None:
        """Single addressee for a role-owned notice.

        The first active, alert-enabled operator holding ``role`` (by name),
        else the first active, alert-enabled operator of any role. Operators
        without a valid email are passed over.
        """
        wanted = normalize_target(role.value if isinstance(role, OperatorRole) else role)
        candidates = [
            op for op in cls.list_active()
            if op.alerts_enabled and is_valid_email(op.email)
        ]
        for op in candidates:
            if op.role and op.role.value == wanted:
                return op
        if candidates:
            logger.info("No alert-enabled %s operator, falling back to %s", wanted, candidates[0].email)
            return candidates[0]
        return None
