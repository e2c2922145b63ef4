"""
Tests — Notification rule scheduler.

Covers:
    1. should_fire_now: frequency, send window, rule timezone
    2. is_suppressed: stop statuses, only-future
    3. Recipient resolution (role audience, topic subscription, extra emails)
    4. trigger_now / run_due_rules dispatch + idempotency
    5. Rule configuration (upsert, validation) and API
"""

from datetime import date, datetime, time, timezone
from types import SimpleNamespace

import pytest

from fieldops.core.exceptions import ValidationError
from fieldops.models import db
from fieldops.models.client import Installation, InstallationTask
from fieldops.models.enums import AlertChannel, OperatorRole, RuleFrequency, RuleMode, TaskStatus
from fieldops.models.scheduling import AlertLogEntry, NotificationRule
from fieldops.services.notification_rule_service import NotificationRuleScheduler, js_weekday


def _utc(y, m, d, hh, mm):
    return datetime(y, m, d, hh, mm, tzinfo=timezone.utc)


def _rule(**overrides) -> NotificationRule:
    """Transient rule with every column set (column defaults apply only on flush)."""
    values = dict(
        task_key="ship-hardware", task_title="Ship hardware", target="WAREHOUSE",
        enabled=True, mode=RuleMode.AUTOMATIC, frequency=RuleFrequency.DAILY,
        send_time=time(7, 30), timezone="Europe/Rome", day_of_week=None,
        stop_statuses=["OK", "NOT_NEEDED"], only_future=True, recipients=[],
    )
    values.update(overrides)
    return NotificationRule(**values)


@pytest.fixture()
def warehouse_setup(acme, make_operator):
    """One AUTOMATIC daily rule, two pending tasks, two warehouse operators."""
    inst = Installation(client_id=acme.id, name="Turin Mall", planned_date=date(2026, 11, 5))
    db.session.add(inst)
    db.session.flush()
    db.session.add_all([
        InstallationTask(installation_id=inst.id, task_key="ship-hardware", title="Ship screens",
                         target="WAREHOUSE", status=TaskStatus.TODO),
        InstallationTask(installation_id=inst.id, task_key="ship-hardware", title="Ship players",
                         target="WAREHOUSE", status=TaskStatus.IN_PROGRESS),
        InstallationTask(installation_id=inst.id, task_key="ship-hardware", title="Ship cables",
                         target="WAREHOUSE", status=TaskStatus.OK),
    ])
    rule = _rule()
    db.session.add(rule)
    db.session.commit()
    make_operator(name="Walter", role=OperatorRole.WAREHOUSE, email="walter@example.com")
    make_operator(name="Wendy", role=OperatorRole.WAREHOUSE, email="wendy@example.com")
    return SimpleNamespace(rule=rule, installation=inst)


class TestShouldFireNow:

    def test_js_weekday(self):
        assert js_weekday(date(2026, 10, 18)) == 0   # Sunday
        assert js_weekday(date(2026, 10, 19)) == 1   # Monday
        assert js_weekday(date(2026, 10, 24)) == 6   # Saturday

    def test_weekly_monday_0730_rome(self):
        rule = _rule(frequency=RuleFrequency.WEEKLY, day_of_week=1)
        # 07:30 CEST = 05:30 UTC
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 19, 5, 30)) is True
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 20, 5, 30)) is False
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 19, 6, 0)) is False

    def test_window_is_one_tick(self):
        rule = _rule()
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 19, 5, 34)) is True
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 19, 5, 35)) is False
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 19, 5, 29)) is False

    def test_rule_timezone_after_dst_change(self):
        # Rome is UTC+1 from 25 Oct 2026: 07:30 local = 06:30 UTC
        rule = _rule()
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 26, 6, 30)) is True
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 26, 5, 30)) is False

    def test_other_timezone(self):
        rule = _rule(timezone="America/New_York")
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 19, 11, 30)) is True

    def test_weekdays_skip_weekend(self):
        rule = _rule(frequency=RuleFrequency.WEEKDAYS)
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 23, 5, 30)) is True   # Friday
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 24, 5, 30)) is False  # Saturday

    def test_weekly_without_day_defaults_to_monday(self):
        rule = _rule(frequency=RuleFrequency.WEEKLY, day_of_week=None)
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 19, 5, 30)) is True

    def test_disabled_rule_never_fires(self):
        rule = _rule(enabled=False)
        assert NotificationRuleScheduler.should_fire_now(rule, _utc(2026, 10, 19, 5, 30)) is False


class TestSuppression:

    def test_stop_status(self):
        rule = _rule()
        item = SimpleNamespace(schedule_status="OK", schedule_date=date(2026, 12, 1))
        assert NotificationRuleScheduler.is_suppressed(rule, item, date(2026, 10, 19)) is True

    def test_past_date_with_only_future(self):
        rule = _rule()
        item = SimpleNamespace(schedule_status="TODO", schedule_date=date(2026, 10, 18))
        assert NotificationRuleScheduler.is_suppressed(rule, item, date(2026, 10, 19)) is True

    def test_past_date_without_only_future(self):
        rule = _rule(only_future=False)
        item = SimpleNamespace(schedule_status="TODO", schedule_date=date(2026, 10, 18))
        assert NotificationRuleScheduler.is_suppressed(rule, item, date(2026, 10, 19)) is False

    def test_undated_item_is_not_suppressed(self):
        rule = _rule()
        item = SimpleNamespace(schedule_status="BLOCKED", schedule_date=None)
        assert NotificationRuleScheduler.is_suppressed(rule, item, date(2026, 10, 19)) is False

    def test_default_stop_statuses(self):
        rule = _rule(stop_statuses=None)
        item = SimpleNamespace(schedule_status="NOT_NEEDED", schedule_date=None)
        assert NotificationRuleScheduler.is_suppressed(rule, item, date(2026, 10, 19)) is True


class TestDispatch:

    def test_matching_tasks_skip_stop_statuses(self, warehouse_setup):
        titles = [t.title for t in NotificationRuleScheduler.matching_tasks(warehouse_setup.rule)]
        assert titles == ["Ship screens", "Ship players"]

    def test_recipients_by_role_topic_and_extra(self, warehouse_setup, make_operator):
        rule = warehouse_setup.rule
        make_operator(name="Topic Fan", role=OperatorRole.TECHNICIAN, email="fan@example.com",
                      alert_topics=[rule.topic])
        make_operator(name="Muted", role=OperatorRole.WAREHOUSE, email="muted@example.com",
                      alerts_enabled=False)
        rule.recipients = ["extra@example.com", "bad address"]
        db.session.commit()

        emails = [r.email for r in NotificationRuleScheduler.resolve_recipients(rule)]
        assert emails == ["extra@example.com", "fan@example.com", "walter@example.com", "wendy@example.com"]

    def test_trigger_now_returns_messages_sent(self, warehouse_setup, frozen_clock):
        rule = warehouse_setup.rule
        frozen_clock.set(_utc(2026, 10, 19, 14, 0))   # far from send_time

        assert NotificationRuleScheduler.trigger_now(rule.id) == 2

        entries = AlertLogEntry.query.all()
        assert {e.channel for e in entries} == {AlertChannel.RULE_MANUAL}
        assert {e.dedup_day for e in entries} == {None}
        assert entries[0].related_ids == [warehouse_setup.installation.id]
        db.session.refresh(rule)
        assert rule.last_sent_on == date(2026, 10, 19)

    def test_trigger_now_with_everything_suppressed(self, warehouse_setup):
        for task in InstallationTask.query.all():
            task.status = TaskStatus.NOT_NEEDED
        db.session.commit()
        assert NotificationRuleScheduler.trigger_now(warehouse_setup.rule.id) == 0
        assert AlertLogEntry.query.count() == 0

    def test_trigger_now_past_installation_suppressed(self, warehouse_setup):
        warehouse_setup.installation.planned_date = date(2026, 10, 1)
        db.session.commit()
        assert NotificationRuleScheduler.trigger_now(warehouse_setup.rule.id) == 0

    def test_run_due_rules_is_idempotent_within_the_day(self, warehouse_setup):
        first = NotificationRuleScheduler.run_due_rules(_utc(2026, 10, 19, 5, 30))
        second = NotificationRuleScheduler.run_due_rules(_utc(2026, 10, 19, 5, 33))

        assert first["rules_fired"] == 1
        assert first["sent"] == 2
        assert second["sent"] == 0
        assert second["skipped"] == 2
        assert AlertLogEntry.query.filter_by(channel=AlertChannel.SCHEDULED_RULE).count() == 2

    def test_run_due_rules_outside_window(self, warehouse_setup):
        totals = NotificationRuleScheduler.run_due_rules(_utc(2026, 10, 19, 9, 0))
        assert totals["rules_checked"] == 1
        assert totals["rules_fired"] == 0
        assert AlertLogEntry.query.count() == 0

    def test_manual_mode_rules_are_not_ticked(self, warehouse_setup):
        warehouse_setup.rule.mode = RuleMode.MANUAL
        db.session.commit()
        totals = NotificationRuleScheduler.run_due_rules(_utc(2026, 10, 19, 5, 30))
        assert totals["rules_checked"] == 0


class TestConfiguration:

    def test_upsert_creates_then_updates(self):
        rule = NotificationRuleScheduler.upsert_rule({
            "task_key": "configure-player", "target": "sw technician", "mode": "automatic",
            "frequency": "weekly", "send_time": "08:15", "recipients": ["Ops@Example.com"],
        })
        assert rule.target == "SW_TECHNICIAN"
        assert rule.day_of_week == 1
        assert rule.send_time == time(8, 15)
        assert rule.recipients == ["ops@example.com"]

        again = NotificationRuleScheduler.upsert_rule({
            "task_key": "configure-player", "target": "SW_TECHNICIAN", "day_of_week": 3,
        })
        assert again.id == rule.id
        assert again.day_of_week == 3
        assert NotificationRule.query.count() == 1
        assert NotificationRuleScheduler.describe_schedule(again) == "Weekly on wed at 08:15 (Europe/Rome)"

    @pytest.mark.parametrize("payload", [
        {"task_key": ""},
        {"task_key": "k", "frequency": "MONTHLY"},
        {"task_key": "k", "send_time": "7h30"},
        {"task_key": "k", "timezone": "Mars/Olympus"},
        {"task_key": "k", "day_of_week": 7},
        {"task_key": "k", "recipients": ["not-an-email"]},
        {"task_key": "k", "stop_statuses": ["DONE"]},
    ])
    def test_upsert_rejects_bad_input(self, payload):
        with pytest.raises(ValidationError):
            NotificationRuleScheduler.upsert_rule(payload)


class TestRuleAPI:

    def test_put_list_preview_and_send_now(self, client, warehouse_setup):
        res = client.put("/api/v1/notification-rules", json={
            "task_key": "ship-hardware", "target": "WAREHOUSE", "send_time": "06:45",
        })
        assert res.status_code == 200
        assert res.get_json()["send_time"] == "06:45"

        res = client.get("/api/v1/notification-rules")
        assert res.get_json()["total"] == 1

        rule_id = warehouse_setup.rule.id
        preview = client.get(f"/api/v1/notification-rules/{rule_id}/preview").get_json()
        assert len(preview["tasks"]) == 2
        assert preview["recipients"] == ["walter@example.com", "wendy@example.com"]

        res = client.post(f"/api/v1/notification-rules/{rule_id}/send-now")
        assert res.status_code == 200
        assert res.get_json() == {"rule_id": rule_id, "sent": 2}

    def test_invalid_timezone_is_422(self, client):
        res = client.put("/api/v1/notification-rules", json={"task_key": "k", "timezone": "Nowhere/City"})
        assert res.status_code == 422
