"""
FieldOps Service Workflow
Closed enumerations for every status / category value in the domain.

Values are stored as plain strings (``db.Enum(..., native_enum=False)``)
so the database never needs an ALTER TYPE when a member is added; the
conversion to/from the enum happens only at the column boundary.
"""

import enum


class InterventionState(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class InvoiceOutcome(str, enum.Enum):
    """Billing outcome recorded when an intervention is closed."""

    TO_INVOICE = "TO_INVOICE"
    DO_NOT_INVOICE = "DO_NOT_INVOICE"
    INCLUDED_IN_SUMMARY = "INCLUDED_IN_SUMMARY"


class RenewalStage(str, enum.Enum):
    TO_NOTIFY = "TO_NOTIFY"
    NOTIFIED = "NOTIFIED"
    CONFIRMED = "CONFIRMED"
    TO_INVOICE = "TO_INVOICE"
    INVOICED = "INVOICED"
    NOT_RENEWED = "NOT_RENEWED"


class RenewalItemType(str, enum.Enum):
    LICENSE = "LICENSE"
    SCREEN_SERVICE = "SCREEN_SERVICE"
    CONTRACT_SERVICE = "CONTRACT_SERVICE"


class OperatorRole(str, enum.Enum):
    ADMIN = "ADMIN"
    ADMINISTRATION = "ADMINISTRATION"
    SUPERVISOR = "SUPERVISOR"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    TECHNICIAN = "TECHNICIAN"
    SW_TECHNICIAN = "SW_TECHNICIAN"
    WAREHOUSE = "WAREHOUSE"
    SYSTEM = "SYSTEM"


class TaskStatus(str, enum.Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    OK = "OK"
    NOT_NEEDED = "NOT_NEEDED"


class AlertChannel(str, enum.Enum):
    """Tag written on every AlertLogEntry; part of the dedup key."""

    AUTOMATIC_INVOICE_DUE = "automatic-invoice-due"
    INVOICE_DUE = "invoice-due"
    BULK_INVOICE_DUE = "bulk-invoice-due"
    RENEWAL_STAGE_1 = "renewal-stage-1"
    RENEWAL_STAGE_2 = "renewal-stage-2"
    RENEWAL_DUE_REMINDER = "renewal-due-reminder"
    SCHEDULED_RULE = "scheduled-rule"
    RULE_MANUAL = "rule-manual"
    INTERVENTION_REOPENED = "intervention-reopened"
    MANUAL = "manual"


class RuleMode(str, enum.Enum):
    AUTOMATIC = "AUTOMATIC"
    MANUAL = "MANUAL"


class RuleFrequency(str, enum.Enum):
    DAILY = "DAILY"
    WEEKDAYS = "WEEKDAYS"
    WEEKLY = "WEEKLY"


# ── Derived sets ─────────────────────────────────────────────────────────────

REOPEN_ROLES = frozenset({OperatorRole.SUPERVISOR, OperatorRole.PROJECT_MANAGER})

RENEWAL_TERMINAL_STAGES = frozenset({RenewalStage.INVOICED, RenewalStage.NOT_RENEWED})

# Automatic channels write a dedup_day and are subject to the unique ledger.
AUTOMATIC_CHANNELS = frozenset({
    AlertChannel.AUTOMATIC_INVOICE_DUE,
    AlertChannel.RENEWAL_STAGE_2,
    AlertChannel.RENEWAL_DUE_REMINDER,
    AlertChannel.SCHEDULED_RULE,
})

DEFAULT_STOP_STATUSES = (TaskStatus.OK.value, TaskStatus.NOT_NEEDED.value)


def parse_enum(enum_cls, value, *, field: str):
    """Coerce a raw string (any case) into ``enum_cls``.

    Raises:
        ValidationError: when the value is missing or not a member.
    """
    from fieldops.core.exceptions import ValidationError

    if isinstance(value, enum_cls):
        return value
    raw = str(value or "").strip()
    if not raw:
        raise ValidationError(f"{field} is required", details={field: "missing"})
    for member in enum_cls:
        if raw.upper() == member.name or raw == member.value:
            return member
    allowed = sorted(m.value for m in enum_cls)
    raise ValidationError(
        f"Invalid {field}: {raw!r}. Must be one of: {allowed}",
        details={field: "invalid"},
    )
