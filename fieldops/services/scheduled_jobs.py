"""
FieldOps Service Workflow
Scheduled Jobs.

Jobs:
    - invoice_due_sweep: automatic invoice-due alert for every invoice-due intervention
    - renewal_stage2_sweep: grouped stage-2 notice for TO_INVOICE renewals never announced
    - renewal_due_reminders: reminder 60/30/15 days before a renewal falls due
    - notification_rules_tick: fire the AUTOMATIC notification rules due now

All of them are idempotent: re-running inside the same day sends nothing new.
"""

from __future__ import annotations

import logging
from typing import Any

from fieldops.core.exceptions import StorageError, ValidationError
from fieldops.services.alert_dispatcher import AlertDispatcher, merge_summaries
from fieldops.services.intervention_lifecycle import invoice_due_query
from fieldops.services.notification_rule_service import NotificationRuleScheduler
from fieldops.services.renewal_lifecycle import due_reminders, pending_stage2_by_client
from fieldops.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Invoice-due sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("invoice_due_sweep")
def sweep_invoice_due(app) -> dict[str, Any]:
    """Send today's automatic invoice-due alert for every invoice-due intervention."""
    results = {"interventions": 0, "sent": 0, "skipped": 0, "failed": 0, "errors": []}
    for iv in invoice_due_query().all():
        results["interventions"] += 1
        merge_summaries(results, AlertDispatcher.dispatch_invoice_due(iv))
    logger.info("Invoice-due sweep over %d interventions: sent=%d skipped=%d failed=%d",
                results["interventions"], results["sent"], results["skipped"], results["failed"],
                extra={"job_name": "invoice_due_sweep"})
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Renewal stage-2 sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("renewal_stage2_sweep")
def sweep_renewal_stage2(app) -> dict[str, Any]:
    """Announce TO_INVOICE renewals never notified, one message per client."""
    results = {"clients": 0, "items": 0, "sent": 0, "skipped": 0, "failed": 0, "errors": []}
    for client_id, items in pending_stage2_by_client().items():
        results["clients"] += 1
        try:
            summary = AlertDispatcher.dispatch_renewal_stage2(items)
        except (ValidationError, StorageError) as exc:
            results["errors"].append({"client_id": client_id, "error": str(exc)})
            logger.error("Stage-2 sweep failed for client %s: %s", client_id, exc,
                         extra={"job_name": "renewal_stage2_sweep"})
            continue
        results["items"] += len(summary.get("items", []))
        merge_summaries(results, summary)
    logger.info("Renewal stage-2 sweep: %s", {k: v for k, v in results.items() if k != "errors"},
                extra={"job_name": "renewal_stage2_sweep"})
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Renewal due-date reminders
# ═══════════════════════════════════════════════════════════════════════════

@register_job("renewal_due_reminders")
def send_renewal_due_reminders(app) -> dict[str, Any]:
    """Remind the renewal owner 60/30/15 days before each item falls due."""
    results = {"items": 0, "sent": 0, "skipped": 0, "failed": 0, "errors": []}
    for item, days in due_reminders():
        results["items"] += 1
        merge_summaries(results, AlertDispatcher.dispatch_renewal_due_reminder(item, days))
    logger.info("Renewal due reminders over %d items: sent=%d skipped=%d failed=%d",
                results["items"], results["sent"], results["skipped"], results["failed"],
                extra={"job_name": "renewal_due_reminders"})
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 4: Notification rules tick
# ═══════════════════════════════════════════════════════════════════════════

@register_job("notification_rules_tick")
def notification_rules_tick(app) -> dict[str, Any]:
    """Fire every AUTOMATIC notification rule whose send window contains now."""
    return NotificationRuleScheduler.run_due_rules()
