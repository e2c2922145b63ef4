"""
FieldOps Service Workflow
Alert Dispatcher — compose, resolve recipients, deliver, log.

Delivery contract (one unit of work per recipient):
    1. pre-check the alert log for today's entry      → skip
    2. process-local in-flight set                     → skip
    3. INSERT the log row and flush                    → IntegrityError = skip
    4. send the mail                                   → TransportError = rollback
    5. COMMIT

Step 3 takes the unique-index lock on (channel, entity, day, recipient),
so a concurrent dispatcher blocks there and then fails the constraint;
the log row only becomes durable after confirmed delivery.

Manual dispatch writes exactly one log row per successful call and no
row at all when validation or delivery fails.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import NamedTuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from fieldops.core.exceptions import TransportError, ValidationError
from fieldops.models import db
from fieldops.models.client import Client, Contract
from fieldops.models.enums import (
    AUTOMATIC_CHANNELS,
    AlertChannel,
    InterventionState,
    InvoiceOutcome,
    RenewalStage,
)
from fieldops.models.intervention import Intervention
from fieldops.models.operator import Operator
from fieldops.models.renewal import RenewalItem
from fieldops.models.scheduling import AlertLogEntry
from fieldops.services.alert_templates import AlertMessage, render
from fieldops.services.clock import get_clock, org_timezone, org_today
from fieldops.services.email_service import EmailService
from fieldops.services.helpers.storage import commit_or_raise, conditional_update, get_or_raise
from fieldops.services.operator_directory import OperatorDirectory, normalize_email

logger = logging.getLogger(__name__)

_inflight: set[tuple] = set()
_inflight_lock = threading.Lock()


@contextmanager
def _inflight_guard(key: tuple):
    """Yield True if this process is the only one holding ``key``."""
    with _inflight_lock:
        acquired = key not in _inflight
        if acquired:
            _inflight.add(key)
    try:
        yield acquired
    finally:
        if acquired:
            with _inflight_lock:
                _inflight.discard(key)


class Recipient(NamedTuple):
    email: str
    name: str | None = None
    operator_id: int | None = None

    @classmethod
    def from_operator(cls, op: Operator) -> "Recipient":
        return cls(email=op.email.strip().lower(), name=op.name, operator_id=op.id)


def _empty_summary() -> dict:
    return {"sent": 0, "skipped": 0, "failed": 0, "errors": []}


def merge_summaries(total: dict, part: dict) -> dict:
    for key in ("sent", "skipped", "failed"):
        total[key] = total.get(key, 0) + part.get(key, 0)
    total.setdefault("errors", []).extend(part.get("errors", []))
    return total


def _base_url() -> str:
    return current_app.config.get("APP_BASE_URL", "")


def _local_now():
    return get_clock().local(None, org_timezone())


def _system_sender() -> str:
    return current_app.config.get("ALERT_SYSTEM_SENDER", "SYSTEM")


def invoice_due_filter():
    return (
        Intervention.state == InterventionState.CLOSED,
        Intervention.outcome == InvoiceOutcome.TO_INVOICE,
        Intervention.invoice_number.is_(None),
    )


class AlertDispatcher:
    """Stateless dispatcher; the alert log is the only durable state."""

    # ── Ledger ────────────────────────────────────────────────────────────

    @staticmethod
    def already_logged(channel: AlertChannel, entity_type: str, entity_id: int,
                       day: date, recipient_email: str) -> bool:
        return db.session.query(AlertLogEntry.id).filter_by(
            channel=channel,
            entity_type=entity_type,
            entity_id=entity_id,
            dedup_day=day,
            recipient_email=recipient_email,
        ).first() is not None

    @staticmethod
    def already_triggered(channel: AlertChannel, entity_type: str, entity_id: int, trigger: str) -> bool:
        return db.session.query(AlertLogEntry.id).filter_by(
            channel=channel,
            entity_type=entity_type,
            entity_id=entity_id,
            reminder_trigger=trigger,
        ).first() is not None

    @staticmethod
    def _log_entry(*, channel, entity_type, entity_id, recipient: Recipient | None,
                   message: AlertMessage, email_sent: bool, client_id=None,
                   related_ids=None, sender: Operator | None = None,
                   dedup_day: date | None = None, reminder_trigger: str | None = None) -> AlertLogEntry:
        entry = AlertLogEntry(
            channel=channel,
            entity_type=entity_type or "",
            entity_id=entity_id,
            related_ids=list(related_ids or []),
            client_id=client_id,
            recipient_operator_id=recipient.operator_id if recipient else None,
            recipient_email=recipient.email if recipient else None,
            recipient_name=recipient.name if recipient else None,
            sender_operator_id=sender.id if sender else None,
            sender_label=sender.name if sender else _system_sender(),
            subject=message.subject[:500],
            body=message.text,
            email_sent=email_sent,
            dedup_day=dedup_day,
            reminder_trigger=reminder_trigger,
            created_at=get_clock().now(),
        )
        db.session.add(entry)
        return entry

    @classmethod
    def deliver(
        cls,
        *,
        channel: AlertChannel,
        entity_type: str,
        entity_id: int,
        recipients: list[Recipient],
        message: AlertMessage,
        client_id: int | None = None,
        related_ids: list[int] | None = None,
        sender: Operator | None = None,
        day: date | None = None,
        trigger: str | None = None,
    ) -> dict:
        """
        Deliver one rendered message to each recipient in its own unit of work.

        Automatic channels are deduplicated per (channel, entity, day,
        recipient); other channels always send. A failing recipient is
        rolled back and reported; the remaining ones are still attempted.
        With a ``trigger`` the entity is alerted once per trigger, whatever
        the day or recipient (unique ``reminder_trigger`` ledger).

        Returns:
            {"sent", "skipped", "failed", "errors": [{"recipient", "error"}]}
        """
        dedup = channel in AUTOMATIC_CHANNELS
        day = (day or org_today()) if dedup else None
        summary = _empty_summary()

        for rcpt in sorted(recipients, key=lambda r: r.email):
            key = (channel.value, entity_type, entity_id, trigger or day, None if trigger else rcpt.email)
            if trigger and cls.already_triggered(channel, entity_type, entity_id, trigger):
                summary["skipped"] += 1
                continue
            if dedup and cls.already_logged(channel, entity_type, entity_id, day, rcpt.email):
                summary["skipped"] += 1
                continue
            with _inflight_guard(key) as acquired:
                if not acquired:
                    summary["skipped"] += 1
                    continue
                cls._log_entry(
                    channel=channel, entity_type=entity_type, entity_id=entity_id,
                    recipient=rcpt, message=message, email_sent=True,
                    client_id=client_id, related_ids=related_ids, sender=sender,
                    dedup_day=day, reminder_trigger=trigger,
                )
                try:
                    db.session.flush()
                except IntegrityError:
                    db.session.rollback()
                    summary["skipped"] += 1
                    logger.info(
                        "Alert already dispatched today: %s %s=%s → %s",
                        channel.value, entity_type, entity_id, rcpt.email,
                        extra={"channel": channel.value, "entity_id": entity_id},
                    )
                    continue
                try:
                    EmailService.send(
                        to_email=rcpt.email, to_name=rcpt.name,
                        subject=message.subject, text_body=message.text, html_body=message.html,
                    )
                except TransportError as exc:
                    db.session.rollback()
                    summary["failed"] += 1
                    summary["errors"].append({"recipient": rcpt.email, "error": str(exc)})
                    logger.warning(
                        "Alert delivery failed: %s %s=%s → %s",
                        channel.value, entity_type, entity_id, rcpt.email,
                        extra={"channel": channel.value, "entity_id": entity_id},
                    )
                    continue
                commit_or_raise(f"log {channel.value} alert")
                summary["sent"] += 1

        logger.info(
            "Dispatched %s for %s=%s: sent=%d skipped=%d failed=%d",
            channel.value, entity_type, entity_id,
            summary["sent"], summary["skipped"], summary["failed"],
            extra={"channel": channel.value, "entity_id": entity_id},
        )
        return summary

    # ── Automatic invoice-due ─────────────────────────────────────────────

    @classmethod
    def dispatch_invoice_due(cls, intervention: Intervention) -> dict:
        """One message per (intervention, day) to every eligible recipient."""
        if not intervention.is_invoice_due:
            summary = _empty_summary()
            summary["reason"] = "not_invoice_due"
            return summary

        recipients = [
            Recipient.from_operator(op)
            for op in OperatorDirectory.eligible_recipients(AlertChannel.AUTOMATIC_INVOICE_DUE)
        ]
        client = intervention.contract.client if intervention.contract else None
        message = render(
            AlertChannel.AUTOMATIC_INVOICE_DUE,
            intervention=intervention,
            client_name=client.name if client else None,
            base_url=_base_url(),
        )
        return cls.deliver(
            channel=AlertChannel.AUTOMATIC_INVOICE_DUE,
            entity_type="intervention",
            entity_id=intervention.id,
            recipients=recipients,
            message=message,
            client_id=client.id if client else None,
        )

    # ── Manual single / bulk ──────────────────────────────────────────────

    @staticmethod
    def resolve_manual_recipient(
        *,
        recipient_operator_id: int | None = None,
        recipient_email: str | None = None,
        client_id: int | None = None,
    ) -> Recipient:
        """
        A named operator (client-scoped when ``client_id`` is given) or a
        manually typed address.

        Raises:
            ValidationError: no recipient, invalid email, or operator
                assigned to another client.
        """
        if recipient_operator_id is not None:
            op = get_or_raise(Operator, recipient_operator_id)
            if not op.is_active:
                raise ValidationError("Recipient operator is inactive",
                                      details={"recipient_operator_id": "inactive"})
            if client_id is not None and op.client_id is not None and op.client_id != client_id:
                raise ValidationError("Recipient operator is assigned to another client",
                                      details={"recipient_operator_id": "client mismatch"})
            return Recipient(email=normalize_email(op.email), name=op.name, operator_id=op.id)
        if recipient_email and recipient_email.strip():
            return Recipient(email=normalize_email(recipient_email))
        raise ValidationError("A recipient operator or email is required",
                              details={"recipient": "missing"})

    @classmethod
    def send_manual(
        cls,
        *,
        sender_id: int | None,
        message: str | None,
        subject: str | None = None,
        recipient_operator_id: int | None = None,
        recipient_email: str | None = None,
        client_id: int | None = None,
        channel: AlertChannel = AlertChannel.MANUAL,
        entity_type: str = "",
        entity_id: int | None = None,
        related_ids: list[int] | None = None,
        send_email: bool = True,
    ) -> dict:
        """
        Send an operator-edited message to one recipient.

        Returns:
            The AlertLogEntry dict.

        Raises:
            ValidationError, PermissionDeniedError: nothing sent, nothing logged.
            TransportError: nothing logged.
        """
        if channel in AUTOMATIC_CHANNELS:
            raise ValidationError(f"Channel {channel.value} is reserved for automatic alerts",
                                  details={"channel": "invalid"})
        body = (message or "").strip()
        if not body:
            raise ValidationError("Message is required", details={"message": "missing"})
        sender = OperatorDirectory.resolve_actor(sender_id, action="send alerts")
        rcpt = cls.resolve_manual_recipient(
            recipient_operator_id=recipient_operator_id,
            recipient_email=recipient_email,
            client_id=client_id,
        )
        rendered = render(AlertChannel.MANUAL, subject=(subject or "").strip() or None, message=body)
        return cls._send_logged(
            channel=channel, entity_type=entity_type, entity_id=entity_id,
            recipient=rcpt, message=rendered, client_id=client_id,
            related_ids=related_ids, sender=sender, send_email=send_email,
        )

    @classmethod
    def _send_logged(cls, *, channel, entity_type, entity_id, recipient: Recipient,
                     message: AlertMessage, client_id, related_ids, sender,
                     send_email: bool) -> dict:
        """Single non-deduplicated send: log row + mail commit together."""
        entry = cls._log_entry(
            channel=channel, entity_type=entity_type, entity_id=entity_id,
            recipient=recipient, message=message, email_sent=send_email,
            client_id=client_id, related_ids=related_ids, sender=sender,
        )
        db.session.flush()
        if send_email:
            try:
                EmailService.send(
                    to_email=recipient.email, to_name=recipient.name,
                    subject=message.subject, text_body=message.text, html_body=message.html,
                )
            except TransportError:
                db.session.rollback()
                raise
        commit_or_raise(f"log {channel.value} alert")
        logger.info(
            "Manual alert %s logged: entity=%s:%s recipient=%s email_sent=%s",
            channel.value, entity_type, entity_id, recipient.email, send_email,
            extra={"channel": channel.value, "entity_id": entity_id},
        )
        return entry.to_dict()

    @staticmethod
    def invoice_due_for_client(client_id: int, intervention_ids: list[int] | None = None) -> list[Intervention]:
        q = (
            Intervention.query.join(Contract, Intervention.contract_id == Contract.id)
            .filter(Contract.client_id == client_id, *invoice_due_filter())
        )
        if intervention_ids:
            q = q.filter(Intervention.id.in_(intervention_ids))
        return q.order_by(Intervention.performed_on.asc(), Intervention.id.asc()).all()

    @classmethod
    def compose_invoice_due(cls, intervention_id: int) -> AlertMessage:
        iv = get_or_raise(Intervention, intervention_id)
        client = iv.contract.client if iv.contract else None
        return render(AlertChannel.INVOICE_DUE, intervention=iv,
                      client_name=client.name if client else None, base_url=_base_url())

    @classmethod
    def compose_bulk_invoice(cls, client_id: int, intervention_ids: list[int] | None = None) -> tuple[AlertMessage, list[Intervention]]:
        client = get_or_raise(Client, client_id)
        items = cls.invoice_due_for_client(client_id, intervention_ids)
        if not items:
            raise ValidationError("No invoice-due interventions for this client",
                                  details={"intervention_ids": "empty"})
        message = render(AlertChannel.BULK_INVOICE_DUE, client_name=client.name,
                         interventions=items, sent_at=_local_now(),
                         base_url=_base_url())
        return message, items

    @classmethod
    def send_invoice_due(cls, *, sender_id: int | None, intervention_id: int,
                         message: str | None = None, subject: str | None = None,
                         recipient_operator_id: int | None = None,
                         recipient_email: str | None = None, send_email: bool = True) -> dict:
        """Manual single-intervention invoice alert (operator may edit the text)."""
        composed = cls.compose_invoice_due(intervention_id)
        iv = get_or_raise(Intervention, intervention_id)
        return cls.send_manual(
            sender_id=sender_id,
            message=message if message is not None else composed.text,
            subject=subject or composed.subject,
            recipient_operator_id=recipient_operator_id,
            recipient_email=recipient_email,
            client_id=iv.contract.client_id if iv.contract else None,
            channel=AlertChannel.INVOICE_DUE,
            entity_type="intervention",
            entity_id=iv.id,
            send_email=send_email,
        )

    @classmethod
    def send_bulk_invoice(cls, *, sender_id: int | None, client_id: int,
                          intervention_ids: list[int] | None = None,
                          message: str | None = None, subject: str | None = None,
                          recipient_operator_id: int | None = None,
                          recipient_email: str | None = None, send_email: bool = True) -> dict:
        """One grouped message covering every selected invoice-due intervention of a client."""
        composed, items = cls.compose_bulk_invoice(client_id, intervention_ids)
        return cls.send_manual(
            sender_id=sender_id,
            message=message if message is not None else composed.text,
            subject=subject or composed.subject,
            recipient_operator_id=recipient_operator_id,
            recipient_email=recipient_email,
            client_id=client_id,
            channel=AlertChannel.BULK_INVOICE_DUE,
            entity_type="client",
            entity_id=client_id,
            related_ids=[iv.id for iv in items],
            send_email=send_email,
        )

    # ── Intervention audit ────────────────────────────────────────────────

    @classmethod
    def record_reopen_audit(cls, intervention: Intervention, actor: Operator) -> AlertLogEntry:
        """Log-only audit row; joins the caller's unit of work (no commit)."""
        message = render(
            AlertChannel.INTERVENTION_REOPENED,
            intervention=intervention,
            actor_name=actor.name,
            reopened_at=_local_now(),
        )
        return cls._log_entry(
            channel=AlertChannel.INTERVENTION_REOPENED,
            entity_type="intervention",
            entity_id=intervention.id,
            recipient=None,
            message=message,
            email_sent=False,
            client_id=intervention.contract.client_id if intervention.contract else None,
            sender=actor,
        )

    # ── Renewals ──────────────────────────────────────────────────────────

    @classmethod
    def send_renewal_stage1(cls, item: RenewalItem, *, sender: Operator,
                            recipient: Recipient, send_email: bool = True) -> AlertLogEntry:
        """
        Stage-1 notice inside the caller's unit of work.

        The log row is flushed and the mail sent; the caller commits the
        stage transition and the row together, or rolls both back.
        """
        message = render(
            AlertChannel.RENEWAL_STAGE_1,
            client_name=item.client.name if item.client else None,
            items=[item],
            sent_at=_local_now(),
            base_url=_base_url(),
        )
        entry = cls._log_entry(
            channel=AlertChannel.RENEWAL_STAGE_1, entity_type="renewal", entity_id=item.id,
            recipient=recipient, message=message, email_sent=send_email,
            client_id=item.client_id, sender=sender,
        )
        db.session.flush()
        if send_email:
            EmailService.send(
                to_email=recipient.email, to_name=recipient.name,
                subject=message.subject, text_body=message.text, html_body=message.html,
            )
        return entry

    @classmethod
    def dispatch_renewal_stage2(cls, items: list[RenewalItem]) -> dict:
        """
        Stage-2 ("ready to invoice") notice for one client's items.

        Exactly one message goes to the default RENEWAL_STAGE2_ROLE
        operator (see ``OperatorDirectory.default_recipient``). Each item is
        claimed with ``stage2_notified_at IS NULL`` before the mail goes
        out, so an item is announced at most once however many requests or
        sweeps race on it. The claims are released only when nothing was
        delivered, and the next sweep retries.
        """
        summary = _empty_summary()
        if not items:
            return summary
        client_ids = {i.client_id for i in items}
        if len(client_ids) != 1:
            raise ValidationError("Stage-2 batches must belong to a single client",
                                  details={"items": "mixed clients"})
        client_id = client_ids.pop()

        op = OperatorDirectory.default_recipient(current_app.config.get("RENEWAL_STAGE2_ROLE", "ADMINISTRATION"))
        if op is None:
            logger.warning("No recipients for renewal stage 2 (client=%s)", client_id)
            summary["reason"] = "no_recipients"
            return summary
        recipient = Recipient.from_operator(op)

        now = get_clock().now()
        claimed_ids = []
        for item in sorted(items, key=lambda i: i.id):
            if conditional_update(
                RenewalItem, item.id,
                where=[RenewalItem.stage == RenewalStage.TO_INVOICE,
                       RenewalItem.stage2_notified_at.is_(None)],
                values={"stage2_notified_at": now, "stage2_recipient": recipient.email},
            ):
                claimed_ids.append(item.id)
        commit_or_raise("claim renewal stage 2")
        if not claimed_ids:
            summary["skipped"] = 1
            summary["reason"] = "already_notified"
            return summary

        claimed = [get_or_raise(RenewalItem, pk, fresh=True) for pk in claimed_ids]
        client = claimed[0].client
        message = render(
            AlertChannel.RENEWAL_STAGE_2,
            client_name=client.name if client else None,
            items=claimed,
            sent_at=_local_now(),
            base_url=_base_url(),
        )
        result = cls.deliver(
            channel=AlertChannel.RENEWAL_STAGE_2,
            entity_type="renewal",
            entity_id=claimed_ids[0],
            recipients=[recipient],
            message=message,
            client_id=client_id,
            related_ids=claimed_ids,
        )
        if result["failed"] and not result["sent"]:
            for pk in claimed_ids:
                conditional_update(RenewalItem, pk, where=[],
                                   values={"stage2_notified_at": None, "stage2_recipient": None})
            commit_or_raise("release renewal stage 2 claim")
            logger.warning("Renewal stage 2 delivery failed, claims released: %s", claimed_ids)
        result["items"] = claimed_ids
        return result

    @classmethod
    def dispatch_renewal_due_reminder(cls, item: RenewalItem, days: int) -> dict:
        """Due-date reminder ``days`` before expiry, once per item and threshold."""
        op = OperatorDirectory.default_recipient(current_app.config.get("RENEWAL_REMINDER_ROLE", "SUPERVISOR"))
        if op is None:
            summary = _empty_summary()
            summary["reason"] = "no_recipients"
            return summary
        message = render(
            AlertChannel.RENEWAL_DUE_REMINDER,
            item=item,
            days=days,
            client_name=item.client.name if item.client else None,
            base_url=_base_url(),
        )
        return cls.deliver(
            channel=AlertChannel.RENEWAL_DUE_REMINDER,
            entity_type="renewal",
            entity_id=item.id,
            recipients=[Recipient.from_operator(op)],
            message=message,
            client_id=item.client_id,
            trigger=f"auto_{days}",
        )

    # ── Notification rules ────────────────────────────────────────────────

    @classmethod
    def send_rule_reminder(cls, rule, tasks: list, recipients: list[Recipient], *,
                           channel: AlertChannel, day: date | None = None,
                           sender: Operator | None = None) -> dict:
        message = render(channel, rule=rule, tasks=tasks, base_url=_base_url())
        return cls.deliver(
            channel=channel,
            entity_type="notification_rule",
            entity_id=rule.id,
            recipients=recipients,
            message=message,
            related_ids=sorted({t.installation_id for t in tasks}),
            sender=sender,
            day=day,
        )

    # ── Log ───────────────────────────────────────────────────────────────

    @staticmethod
    def list_log(*, channel: AlertChannel | None = None, entity_type: str | None = None,
                 entity_id: int | None = None, limit: int = 100) -> list[dict]:
        q = AlertLogEntry.query
        if channel is not None:
            q = q.filter(AlertLogEntry.channel == channel)
        if entity_type:
            q = q.filter(AlertLogEntry.entity_type == entity_type)
        if entity_id is not None:
            q = q.filter(AlertLogEntry.entity_id == entity_id)
        rows = q.order_by(AlertLogEntry.created_at.desc(), AlertLogEntry.id.desc()).limit(limit).all()
        return [r.to_dict() for r in rows]
