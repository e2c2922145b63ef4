"""
FieldOps Service Workflow
Alert message composition.

One renderer per channel, registered with ``@renderer(channel)``; each
returns an ``AlertMessage`` (subject + plain text + HTML). Composition is
pure: no database writes, no delivery, so every template is testable on
its own.

Usage:
    from fieldops.services.alert_templates import render

    msg = render(AlertChannel.BULK_INVOICE_DUE, client_name="ACME",
                 interventions=rows, sent_at=now)
    msg.subject, msg.text, msg.html
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable

from markupsafe import escape

from fieldops.models.enums import AlertChannel

PLACEHOLDER = "-"
SUBJECT_PREFIX = "[FieldOps]"


@dataclass(frozen=True)
class AlertMessage:
    subject: str
    text: str
    html: str


_RENDERERS: dict[AlertChannel, Callable[..., AlertMessage]] = {}


def renderer(*channels: AlertChannel):
    """Register a composition function for one or more channels."""
    def decorator(fn):
        for ch in channels:
            _RENDERERS[ch] = fn
        return fn
    return decorator


def render(channel: AlertChannel, **context) -> AlertMessage:
    fn = _RENDERERS.get(channel)
    if fn is None:
        raise KeyError(f"No template registered for channel {channel!r}")
    return fn(channel=channel, **context)


def registered_channels() -> set[AlertChannel]:
    return set(_RENDERERS)


# ═══════════════════════════════════════════════════════════════════════════
#  Formatting helpers
# ═══════════════════════════════════════════════════════════════════════════

def fmt_date(value: date | datetime | None) -> str:
    if not value:
        return PLACEHOLDER
    return value.strftime("%d/%m/%Y")


def fmt_datetime(value: datetime | None) -> str:
    if not value:
        return PLACEHOLDER
    return value.strftime("%d/%m/%Y %H:%M")


def trim(value: str | None, limit: int = 80) -> str:
    raw = str(value or PLACEHOLDER).strip() or PLACEHOLDER
    return raw if len(raw) <= limit else f"{raw[: limit - 3]}..."


def _link(base_url: str, path: str) -> str:
    return f"{base_url}{path}" if base_url else path


def _html_page(title: str, body_html: str, footer: str = "Automated message from FieldOps.") -> str:
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 640px;\">"
        f"<h2 style=\"font-size: 18px; color: #1e293b;\">{escape(title)}</h2>"
        f"{body_html}"
        f"<p style=\"font-size: 12px; color: #6b7280;\">{escape(footer)}</p>"
        "</div>"
    )


def _html_list(lines: list[str]) -> str:
    return "<ul>" + "".join(f"<li>{escape(line)}</li>" for line in lines) + "</ul>"


def _html_paragraphs(lines: list[str]) -> str:
    return "".join(f"<p style=\"margin: 4px 0;\">{escape(line)}</p>" for line in lines)


def _intervention_routing(iv) -> tuple[str, str]:
    inst = iv.installation
    proforma = iv.proforma or (inst.proforma if inst else None) or PLACEHOLDER
    warehouse = iv.warehouse_code or (inst.warehouse_code if inst else None) or PLACEHOLDER
    return proforma, warehouse


def _renewal_routing(item) -> tuple[str, str, str]:
    inst = item.installation
    name = inst.name if inst else PLACEHOLDER
    proforma = (inst.proforma if inst else None) or PLACEHOLDER
    warehouse = (inst.warehouse_code if inst else None) or PLACEHOLDER
    return name, proforma, warehouse


# ═══════════════════════════════════════════════════════════════════════════
#  Interventions
# ═══════════════════════════════════════════════════════════════════════════

@renderer(AlertChannel.AUTOMATIC_INVOICE_DUE, AlertChannel.INVOICE_DUE)
def render_invoice_due(*, channel, intervention, client_name: str | None = None,
                       base_url: str = "") -> AlertMessage:
    """Single intervention ready to be invoiced."""
    iv = intervention
    proforma, warehouse = _intervention_routing(iv)
    client = client_name or PLACEHOLDER
    kind = "INCLUDED" if iv.included else "EXTRA"
    lines = [
        f"Client: {client}",
        f"Installation: {iv.installation.name if iv.installation else PLACEHOLDER}",
        f"Date: {fmt_date(iv.performed_on)}",
        f"Type: {kind}",
        f"Description: {trim(iv.description, 200)}",
        f"Pro-forma: {proforma} | Warehouse: {warehouse}",
        f"Link: {_link(base_url, f'/interventions/{iv.id}')}",
    ]
    title = f"Intervention to invoice - {client}"
    return AlertMessage(
        subject=f"{SUBJECT_PREFIX} {title}",
        text="\n".join([title, ""] + lines),
        html=_html_page(title, _html_paragraphs(lines)),
    )


@renderer(AlertChannel.BULK_INVOICE_DUE)
def render_bulk_invoice(*, channel, client_name: str | None, interventions: list,
                        sent_at: datetime, base_url: str = "") -> AlertMessage:
    """
    Batched invoice-due message.

    Items are grouped by installation (groups sorted by installation name,
    items by date); the header carries the running totals.
    """
    groups: dict[int | None, list] = defaultdict(list)
    for iv in interventions:
        groups[iv.installation_id].append(iv)

    def _group_name(key):
        first = groups[key][0]
        return (first.installation.name if first.installation else "") or str(key or "")

    ordered_keys = sorted(groups, key=lambda k: (_group_name(k).lower(), k or 0))
    client = client_name or PLACEHOLDER
    included = sum(1 for iv in interventions if iv.included)

    header = [
        f"INVOICES TO ISSUE - Client: {client}",
        f"Total interventions: {len(interventions)}",
        f"Included: {included} | Extra: {len(interventions) - included}",
        f"Installations involved: {len(ordered_keys)}",
        f"Sent: {fmt_datetime(sent_at)}",
    ]
    text_lines = list(header) + [""]
    html_sections = [_html_paragraphs(header[1:])]
    for key in ordered_keys:
        items = sorted(groups[key], key=lambda iv: (iv.performed_on or date.min, iv.id or 0))
        inst = items[0].installation
        proforma = (inst.proforma if inst else None) or PLACEHOLDER
        warehouse = (inst.warehouse_code if inst else None) or PLACEHOLDER
        group_header = f"INSTALLATION: {_group_name(key) or PLACEHOLDER}"
        group_meta = (f"Pro-forma: {proforma} | Warehouse: {warehouse} | "
                      f"Link: {_link(base_url, f'/installations/{key}') if key else PLACEHOLDER}")
        item_lines = []
        for iv in items:
            kind = "INCLUDED" if iv.included else "EXTRA"
            note = f" | Note: {trim(iv.notes)}" if iv.notes else ""
            item_lines.append(f"{fmt_date(iv.performed_on)} | {kind} | {trim(iv.description)}{note}")
        text_lines += [group_header, group_meta] + [f"- {line}" for line in item_lines] + [""]
        html_sections.append(
            f"<h3 style=\"font-size: 15px;\">{escape(group_header)}</h3>"
            f"<p style=\"margin: 4px 0;\">{escape(group_meta)}</p>"
            f"{_html_list(item_lines)}"
        )
    title = f"Invoices to issue - {client}"
    return AlertMessage(
        subject=f"{SUBJECT_PREFIX} {title} ({len(interventions)})",
        text="\n".join(text_lines).rstrip() + "\n",
        html=_html_page(header[0], "".join(html_sections)),
    )


@renderer(AlertChannel.INTERVENTION_REOPENED)
def render_reopened(*, channel, intervention, actor_name: str, reopened_at: datetime) -> AlertMessage:
    text = (
        f"Intervention #{intervention.id} reopened by {actor_name} "
        f"at {fmt_datetime(reopened_at)}."
    )
    return AlertMessage(
        subject=f"{SUBJECT_PREFIX} Intervention #{intervention.id} reopened",
        text=text,
        html=_html_page("Intervention reopened", _html_paragraphs([text])),
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Renewals
# ═══════════════════════════════════════════════════════════════════════════

def _renewal_line(item, base_url: str) -> str:
    name, proforma, warehouse = _renewal_routing(item)
    link = f" | {_link(base_url, f'/installations/{item.installation_id}')}" if item.installation_id else ""
    return (
        f"{fmt_date(item.due_date)} | {item.display_reference} | Installation: {name} | "
        f"Pro-forma: {proforma} | Warehouse: {warehouse}{link} | Stage: {item.stage.value}"
    )


@renderer(AlertChannel.RENEWAL_STAGE_1, AlertChannel.RENEWAL_STAGE_2)
def render_renewals(*, channel, client_name: str | None, items: list,
                    sent_at: datetime, base_url: str = "") -> AlertMessage:
    """Stage-1 ("please confirm") or stage-2 ("ready to invoice") renewal notice.

    A single item renders as a detail card; several items are grouped by
    item type and sorted by due date.
    """
    client = client_name or PLACEHOLDER
    stage1 = channel == AlertChannel.RENEWAL_STAGE_1
    heading = "RENEWAL NOTICE" if stage1 else "RENEWAL INVOICING"
    if len(items) > 1:
        heading = "RENEWALS NOTICE" if stage1 else "RENEWALS INVOICING"
    header = [f"{heading} - Client: {client}"]

    if len(items) == 1:
        item = items[0]
        name, proforma, warehouse = _renewal_routing(item)
        body = [
            f"Type: {item.item_type.value}",
            f"Reference: {item.display_reference}",
            f"Due date: {fmt_date(item.due_date)}",
            f"Installation: {name}",
            f"Pro-forma: {proforma} | Warehouse: {warehouse}",
            f"Stage: {item.stage.value}",
        ]
        text = "\n".join(header + body)
        html = _html_page(header[0], _html_paragraphs(body))
    else:
        header += [f"Items: {len(items)}", f"Sent: {fmt_datetime(sent_at)}"]
        by_type: dict[str, list] = defaultdict(list)
        for item in items:
            by_type[item.item_type.value].append(item)
        text_lines = list(header) + [""]
        html_parts = [_html_paragraphs(header[1:])]
        for item_type in sorted(by_type):
            rows = sorted(by_type[item_type], key=lambda r: (r.due_date or date.max, r.id or 0))
            lines = [_renewal_line(r, base_url) for r in rows]
            text_lines += [f"TYPE: {item_type}"] + [f"- {line}" for line in lines] + [""]
            html_parts.append(f"<h3 style=\"font-size: 15px;\">{escape(item_type)}</h3>{_html_list(lines)}")
        text = "\n".join(text_lines).rstrip()
        html = _html_page(header[0], "".join(html_parts))

    verb = "Renewal to confirm" if stage1 else "Renewal to invoice"
    return AlertMessage(subject=f"{SUBJECT_PREFIX} {verb} - {client}", text=text, html=html)


@renderer(AlertChannel.RENEWAL_DUE_REMINDER)
def render_due_reminder(*, channel, item, days: int, client_name: str | None,
                        base_url: str = "") -> AlertMessage:
    client = client_name or PLACEHOLDER
    name, proforma, warehouse = _renewal_routing(item)
    header = f"REMINDER {item.item_type.value} ({days}d) - Client: {client}"
    body = [
        f"Due date: {fmt_date(item.due_date)}",
        f"Reference: {item.display_reference}",
        f"Installation: {name}",
        f"Pro-forma: {proforma} | Warehouse: {warehouse}",
        f"Stage: {item.stage.value}",
    ]
    if item.description and item.description != item.display_reference:
        body.append(f"Note: {trim(item.description, 200)}")
    if item.installation_id:
        body.append(f"Link: {_link(base_url, f'/installations/{item.installation_id}')}")
    return AlertMessage(
        subject=f"{SUBJECT_PREFIX} Reminder {days}d - {client}",
        text="\n".join([header] + body),
        html=_html_page(header, _html_paragraphs(body)),
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Notification rules
# ═══════════════════════════════════════════════════════════════════════════

@renderer(AlertChannel.SCHEDULED_RULE, AlertChannel.RULE_MANUAL)
def render_rule_reminder(*, channel, rule, tasks: list, base_url: str = "") -> AlertMessage:
    """Reminder listing the open tasks a rule governs, grouped by installation."""
    by_installation: dict[int, list] = defaultdict(list)
    for task in tasks:
        by_installation[task.installation_id].append(task)

    label = rule.target or "REMINDER"
    title = rule.task_title or rule.task_key
    subject = f"{SUBJECT_PREFIX} Reminder - {label} pending ({len(by_installation)})"
    text_lines = [subject, f"Task: {title}", ""]
    html_parts = [f"<p><strong>Task:</strong> {escape(title)}</p>"]
    ordered = sorted(
        by_installation.values(),
        key=lambda ts: ((ts[0].installation.name or "").lower(), ts[0].installation_id),
    )
    for group in ordered:
        inst = group[0].installation
        client = inst.client.name if inst.client else PLACEHOLDER
        link = _link(base_url, f"/installations/{inst.id}")
        task_lines = [t.title for t in sorted(group, key=lambda t: t.id or 0)]
        text_lines += [
            f"Installation: {inst.name}",
            f"Client: {client}",
            f"Installation date (hard/planned): {fmt_date(inst.effective_date)}",
            "Pending tasks:",
        ] + [f"- {line}" for line in task_lines] + [f"Link: {link}", ""]
        html_parts.append(
            f"<p><strong>{escape(inst.name)}</strong><br/>Client: {escape(client)}<br/>"
            f"Installation date (hard/planned): {escape(fmt_date(inst.effective_date))}<br/>"
            f"<a href=\"{escape(link)}\">Open installation</a></p>{_html_list(task_lines)}"
        )
    return AlertMessage(
        subject=subject,
        text="\n".join(text_lines).rstrip(),
        html=_html_page(subject, "".join(html_parts)),
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Manual
# ═══════════════════════════════════════════════════════════════════════════

@renderer(AlertChannel.MANUAL)
def render_manual(*, channel, subject: str | None, message: str, heading: str | None = None) -> AlertMessage:
    final_subject = subject or f"{SUBJECT_PREFIX} {heading or 'Notice'}"
    return AlertMessage(
        subject=final_subject,
        text=message,
        html=_html_page(final_subject, _html_paragraphs(message.splitlines() or [message])),
    )
