"""
Tests — Scheduler service + scheduled jobs.

Covers:
    1. Job registry
    2. invoice_due_sweep / renewal_stage2_sweep / renewal_due_reminders / notification_rules_tick
    3. SchedulerService.run_job run history, disabled jobs, failures
"""

from datetime import date, timedelta
from unittest.mock import patch

from fieldops.models import db
from fieldops.models.client import Client
from fieldops.models.enums import AlertChannel, InterventionState, RenewalItemType, RenewalStage
from fieldops.models.renewal import RenewalItem
from fieldops.models.scheduling import AlertLogEntry, ScheduledJob
from fieldops.services import scheduled_jobs
from fieldops.services.email_service import EmailService
from fieldops.services.scheduler_service import SchedulerService, get_registered_jobs


def _pending_renewal(client_id, reference):
    item = RenewalItem(client_id=client_id, item_type=RenewalItemType.SCREEN_SERVICE,
                       reference=reference, due_date=date(2026, 12, 31), stage=RenewalStage.TO_INVOICE)
    db.session.add(item)
    db.session.commit()
    return item


def test_all_jobs_registered():
    assert set(get_registered_jobs()) == {
        "invoice_due_sweep", "renewal_stage2_sweep", "renewal_due_reminders", "notification_rules_tick",
    }


class TestInvoiceDueSweep:

    def test_sweep_sends_once_per_day(self, app, make_intervention, admin):
        make_intervention(state=InterventionState.CLOSED)
        make_intervention(state=InterventionState.CLOSED)
        make_intervention(state=InterventionState.CLOSED, invoice_number="INV-1")

        first = scheduled_jobs.sweep_invoice_due(app)
        second = scheduled_jobs.sweep_invoice_due(app)

        assert first["interventions"] == 2
        assert first["sent"] == 2
        assert second["sent"] == 0
        assert second["skipped"] == 2
        assert AlertLogEntry.query.filter_by(channel=AlertChannel.AUTOMATIC_INVOICE_DUE).count() == 2

    def test_sweep_without_backlog(self, app, admin):
        assert scheduled_jobs.sweep_invoice_due(app)["interventions"] == 0


class TestRenewalStage2Sweep:

    def test_one_message_per_client(self, app, acme, admin):
        other = Client(name="Beta Shops")
        db.session.add(other)
        db.session.commit()
        a1 = _pending_renewal(acme.id, "SRV-A1")
        a2 = _pending_renewal(acme.id, "SRV-A2")
        b1 = _pending_renewal(other.id, "SRV-B1")

        result = scheduled_jobs.sweep_renewal_stage2(app)

        assert result["clients"] == 2
        assert result["items"] == 3
        assert result["sent"] == 2
        rows = AlertLogEntry.query.filter_by(channel=AlertChannel.RENEWAL_STAGE_2).all()
        assert sorted(r.entity_id for r in rows) == sorted([a1.id, b1.id])
        batch = next(r for r in rows if r.client_id == acme.id)
        assert sorted(batch.related_ids) == sorted([a1.id, a2.id])

        again = scheduled_jobs.sweep_renewal_stage2(app)
        assert again["clients"] == 0
        assert again["sent"] == 0


class TestRenewalDueReminders:

    @staticmethod
    def _due_in(client_id, days, reference, stage=RenewalStage.TO_NOTIFY):
        item = RenewalItem(client_id=client_id, item_type=RenewalItemType.LICENSE, reference=reference,
                           due_date=date(2026, 10, 19) + timedelta(days=days), stage=stage)
        db.session.add(item)
        db.session.commit()
        return item

    def test_each_threshold_fires_once(self, app, acme, supervisor):
        hits = [self._due_in(acme.id, days, f"LIC-{days}") for days in (60, 30, 15)]
        self._due_in(acme.id, 45, "LIC-45")

        with patch.object(EmailService, "send", return_value="dev-1") as send:
            first = scheduled_jobs.send_renewal_due_reminders(app)
            second = scheduled_jobs.send_renewal_due_reminders(app)

        assert first["items"] == 3
        assert first["sent"] == 3
        assert second["sent"] == 0
        assert second["skipped"] == 3
        assert send.call_count == 3
        assert {c.kwargs["to_email"] for c in send.call_args_list} == {supervisor.email}
        rows = AlertLogEntry.query.filter_by(channel=AlertChannel.RENEWAL_DUE_REMINDER).all()
        assert sorted((r.entity_id, r.reminder_trigger) for r in rows) == sorted(
            (item.id, f"auto_{days}") for item, days in zip(hits, (60, 30, 15))
        )

    def test_days_between_thresholds_do_not_fire(self, app, acme, supervisor, frozen_clock):
        self._due_in(acme.id, 30, "LIC-30")
        scheduled_jobs.send_renewal_due_reminders(app)

        frozen_clock.advance(timedelta(days=1))
        nothing = scheduled_jobs.send_renewal_due_reminders(app)
        assert nothing["items"] == 0
        assert nothing["sent"] == 0

        frozen_clock.advance(timedelta(days=14))
        next_step = scheduled_jobs.send_renewal_due_reminders(app)
        assert next_step["sent"] == 1
        triggers = sorted(r.reminder_trigger for r in AlertLogEntry.query.filter_by(
            channel=AlertChannel.RENEWAL_DUE_REMINDER))
        assert triggers == ["auto_15", "auto_30"]

    def test_trigger_dedup_survives_the_day_change(self, app, acme, supervisor, frozen_clock):
        from fieldops.services.alert_dispatcher import AlertDispatcher

        item = self._due_in(acme.id, 30, "LIC-30")
        assert AlertDispatcher.dispatch_renewal_due_reminder(item, 30)["sent"] == 1

        frozen_clock.advance(timedelta(days=1))
        again = AlertDispatcher.dispatch_renewal_due_reminder(item, 30)
        assert again["sent"] == 0
        assert again["skipped"] == 1

    def test_terminal_stages_are_skipped(self, app, acme, supervisor):
        self._due_in(acme.id, 30, "LIC-DONE", stage=RenewalStage.INVOICED)
        self._due_in(acme.id, 15, "LIC-LOST", stage=RenewalStage.NOT_RENEWED)
        assert scheduled_jobs.send_renewal_due_reminders(app)["items"] == 0
        assert AlertLogEntry.query.count() == 0

    def test_no_recipient_sends_nothing(self, app, acme):
        self._due_in(acme.id, 60, "LIC-60")
        result = scheduled_jobs.send_renewal_due_reminders(app)
        assert result["items"] == 1
        assert result["sent"] == 0
        assert AlertLogEntry.query.count() == 0


class TestNotificationRulesTick:

    def test_tick_delegates_to_scheduler(self, app):
        with patch("fieldops.services.scheduled_jobs.NotificationRuleScheduler.run_due_rules",
                   return_value={"rules_checked": 0}) as run:
            assert scheduled_jobs.notification_rules_tick(app) == {"rules_checked": 0}
        run.assert_called_once_with()


class TestSchedulerService:

    def test_run_job_records_history(self, make_intervention, admin):
        make_intervention(state=InterventionState.CLOSED)

        result = SchedulerService.run_job("invoice_due_sweep")

        assert result["status"] == "success"
        assert result["result"]["sent"] == 1
        db.session.expire_all()
        record = ScheduledJob.query.filter_by(job_name="invoice_due_sweep").one()
        assert record.run_count == 1
        assert record.last_run_status == "success"

    def test_unknown_job(self):
        assert SchedulerService.run_job("nope")["status"] == "error"

    def test_disabled_job_is_skipped_unless_forced(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("renewal_stage2_sweep", False)

        assert SchedulerService.run_job("renewal_stage2_sweep")["status"] == "skipped"
        assert SchedulerService.run_job("renewal_stage2_sweep", force=True)["status"] == "success"

    def test_failure_is_recorded_not_raised(self):
        with patch.dict("fieldops.services.scheduler_service._job_registry",
                        {"invoice_due_sweep": lambda app: 1 / 0}):
            result = SchedulerService.run_job("invoice_due_sweep")
        assert result["status"] == "failed"
        assert "division by zero" in result["error"]
        db.session.expire_all()
        record = ScheduledJob.query.filter_by(job_name="invoice_due_sweep").one()
        assert record.error_count == 1

    def test_run_all_covers_every_job(self):
        names = [r["job_name"] for r in SchedulerService.run_all()]
        assert names == list(get_registered_jobs())
