"""
FieldOps Service Workflow
Notification Rule Scheduler — recurring task reminders per topic.

A rule fires on a tick when:
    enabled
    AND local time (rule timezone) ∈ [send_time, send_time + tick)
    AND the local day matches the frequency
        DAILY     every day
        WEEKDAYS  Monday–Friday
        WEEKLY    only on day_of_week (0=Sunday … 6=Saturday)

Repeated ticks inside the window are harmless: each (rule, day,
recipient) is deduplicated by the alert log unique constraint.

Usage:
    from fieldops.services.notification_rule_service import NotificationRuleScheduler

    NotificationRuleScheduler.run_due_rules()          # cron tick
    NotificationRuleScheduler.trigger_now(rule_id=3)   # "send now" button
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from flask import current_app

from fieldops.core.exceptions import ValidationError
from fieldops.models import db
from fieldops.models.client import InstallationTask
from fieldops.models.enums import (
    DEFAULT_STOP_STATUSES,
    AlertChannel,
    RuleFrequency,
    RuleMode,
    TaskStatus,
    parse_enum,
)
from fieldops.models.operator import Operator
from fieldops.models.scheduling import DEFAULT_RULE_TIMEZONE, NotificationRule
from fieldops.services.alert_dispatcher import AlertDispatcher, Recipient, merge_summaries
from fieldops.services.clock import get_clock, resolve_zone
from fieldops.services.helpers.storage import commit_or_raise, get_or_raise
from fieldops.services.operator_directory import (
    OperatorDirectory,
    is_valid_email,
    normalize_email,
    normalize_target,
)
from fieldops.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

DEFAULT_WEEKLY_DAY = 1  # Monday
_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def js_weekday(d: date) -> int:
    """0=Sunday … 6=Saturday (Python's weekday() is 0=Monday)."""
    return (d.weekday() + 1) % 7


def parse_send_time(value) -> time:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    raw = str(value or "").strip()
    try:
        hh, mm = raw.split(":")[:2]
        return time(int(hh), int(mm))
    except ValueError as exc:
        raise ValidationError(f"Invalid send_time: {raw!r} (expected HH:MM)",
                              details={"send_time": "invalid"}) from exc


def _tick() -> timedelta:
    return timedelta(minutes=int(current_app.config.get("SCHEDULER_TICK_MINUTES", 5)))


class NotificationRuleScheduler:
    """Rule evaluation and dispatch; rules themselves are plain rows."""

    # ── Gates ─────────────────────────────────────────────────────────────

    @staticmethod
    def matches_day(rule: NotificationRule, local_day: date) -> bool:
        weekday = js_weekday(local_day)
        if rule.frequency == RuleFrequency.WEEKDAYS:
            return 1 <= weekday <= 5
        if rule.frequency == RuleFrequency.WEEKLY:
            target = rule.day_of_week if rule.day_of_week is not None else DEFAULT_WEEKLY_DAY
            return weekday == target
        return True

    @classmethod
    def should_fire_now(cls, rule: NotificationRule, now: datetime | None = None) -> bool:
        if not rule.enabled:
            return False
        local = get_clock().local(now, rule.timezone or DEFAULT_RULE_TIMEZONE)
        if not cls.matches_day(rule, local.date()):
            return False
        send_time = rule.send_time or time(7, 30)
        window_start = datetime.combine(local.date(), send_time, tzinfo=local.tzinfo)
        wall = local.replace(second=0, microsecond=0)
        return window_start <= wall < window_start + _tick()

    @staticmethod
    def is_suppressed(rule: NotificationRule, item, today: date | None = None) -> bool:
        """
        True if the item's status is a stop status, or only-future is set
        and the item's date lies before today in the rule's timezone.
        """
        stop = set(rule.stop_statuses if rule.stop_statuses is not None else DEFAULT_STOP_STATUSES)
        if item.schedule_status in stop:
            return True
        if rule.only_future:
            today = today or get_clock().today(rule.timezone or DEFAULT_RULE_TIMEZONE)
            item_date = item.schedule_date
            if item_date is not None and item_date < today:
                return True
        return False

    # ── Resolution ────────────────────────────────────────────────────────

    @classmethod
    def matching_tasks(cls, rule: NotificationRule) -> list[InstallationTask]:
        """Tasks governed by the rule that are not suppressed today."""
        today = get_clock().today(rule.timezone or DEFAULT_RULE_TIMEZONE)
        tasks = (
            InstallationTask.query
            .filter(InstallationTask.task_key == rule.task_key,
                    InstallationTask.target == rule.target)
            .order_by(InstallationTask.installation_id.asc(), InstallationTask.id.asc())
            .all()
        )
        return [t for t in tasks if not cls.is_suppressed(rule, t, today)]

    @staticmethod
    def resolve_recipients(rule: NotificationRule) -> list[Recipient]:
        """
        Operators whose role matches the rule's audience (or who subscribed
        to the topic), with alerts enabled, plus the rule's extra emails.
        """
        out: dict[str, Recipient] = {}
        for op in OperatorDirectory.list_active():
            if not op.alerts_enabled or not is_valid_email(op.email):
                continue
            role_match = op.role is not None and normalize_target(op.role.value) == rule.target
            if role_match or op.is_subscribed_to(rule.topic):
                rcpt = Recipient.from_operator(op)
                out.setdefault(rcpt.email, rcpt)
        for raw in rule.recipients or []:
            if not is_valid_email(raw):
                logger.warning("Rule %s has invalid extra recipient %r", rule.id, raw,
                               extra={"rule_id": rule.id})
                continue
            email = normalize_email(raw)
            out.setdefault(email, Recipient(email=email))
        return sorted(out.values(), key=lambda r: r.email)

    # ── Dispatch ──────────────────────────────────────────────────────────

    @classmethod
    def trigger_now(cls, rule_id: int, actor_id: int | None = None) -> int:
        """
        Immediate send, ignoring the time-of-day gate but not suppression.

        Returns:
            Number of messages actually sent (0 when nothing is pending).
        """
        rule = get_or_raise(NotificationRule, rule_id)
        sender: Operator | None = None
        if actor_id is not None:
            sender = OperatorDirectory.resolve_actor(actor_id, action="send rule reminders")

        tasks = cls.matching_tasks(rule)
        if not tasks:
            logger.info("Rule %s: nothing pending, no reminder sent", rule.id, extra={"rule_id": rule.id})
            return 0
        recipients = cls.resolve_recipients(rule)
        if not recipients:
            logger.info("Rule %s: no recipients", rule.id, extra={"rule_id": rule.id})
            return 0

        summary = AlertDispatcher.send_rule_reminder(
            rule, tasks, recipients, channel=AlertChannel.RULE_MANUAL, sender=sender,
        )
        cls._mark_sent(rule, summary["sent"], get_clock().today(rule.timezone))
        return summary["sent"]

    @classmethod
    def run_due_rules(cls, now: datetime | None = None) -> dict:
        """
        Periodic tick: fire every enabled AUTOMATIC rule whose window contains ``now``.

        Idempotent per (rule, local day, recipient).
        """
        now = now or get_clock().now()
        totals = {"rules_checked": 0, "rules_fired": 0, "sent": 0, "skipped": 0,
                  "failed": 0, "errors": []}
        rules = (
            NotificationRule.query
            .filter(NotificationRule.enabled.is_(True), NotificationRule.mode == RuleMode.AUTOMATIC)
            .order_by(NotificationRule.id.asc())
            .all()
        )
        for rule in rules:
            totals["rules_checked"] += 1
            if not cls.should_fire_now(rule, now):
                continue
            tasks = cls.matching_tasks(rule)
            recipients = cls.resolve_recipients(rule) if tasks else []
            if not tasks or not recipients:
                continue
            local_day = get_clock().local(now, rule.timezone).date()
            summary = AlertDispatcher.send_rule_reminder(
                rule, tasks, recipients, channel=AlertChannel.SCHEDULED_RULE, day=local_day,
            )
            totals["rules_fired"] += 1
            merge_summaries(totals, summary)
            cls._mark_sent(rule, summary["sent"], local_day)
        logger.info("Notification rules tick: %s", {k: v for k, v in totals.items() if k != "errors"})
        return totals

    @staticmethod
    def _mark_sent(rule: NotificationRule, sent: int, day: date) -> None:
        if sent <= 0:
            return
        rule.last_sent_on = day
        commit_or_raise("update rule last_sent_on")

    # ── Configuration ─────────────────────────────────────────────────────

    @staticmethod
    def list_rules() -> list[NotificationRule]:
        return NotificationRule.query.order_by(
            NotificationRule.task_key.asc(), NotificationRule.target.asc(),
        ).all()

    @staticmethod
    def upsert_rule(data: dict) -> NotificationRule:
        """
        Create or update the rule for (task_key, target).

        Editing a rule never touches the alert log.

        Raises:
            ValidationError: bad mode, frequency, time, timezone, day or email.
        """
        task_key = str(data.get("task_key") or "").strip()
        if not task_key:
            raise ValidationError("task_key is required", details={"task_key": "missing"})
        target = normalize_target(data.get("target"))

        rule = NotificationRule.query.filter_by(task_key=task_key, target=target).first()
        if rule is None:
            rule = NotificationRule(task_key=task_key, target=target)
            db.session.add(rule)

        if "task_title" in data or not rule.task_title:
            rule.task_title = str(data.get("task_title") or task_key).strip()
        if "enabled" in data:
            rule.enabled = parse_bool(data["enabled"], "enabled", default=True)
        if "mode" in data:
            rule.mode = parse_enum(RuleMode, data["mode"], field="mode")
        if "frequency" in data:
            rule.frequency = parse_enum(RuleFrequency, data["frequency"], field="frequency")
        if "send_time" in data:
            rule.send_time = parse_send_time(data["send_time"])
        if "timezone" in data:
            tz_name = str(data["timezone"] or DEFAULT_RULE_TIMEZONE).strip()
            resolve_zone(tz_name)
            rule.timezone = tz_name
        if "day_of_week" in data and data["day_of_week"] is not None:
            try:
                dow = int(data["day_of_week"])
            except (TypeError, ValueError) as exc:
                raise ValidationError("day_of_week must be an integer 0-6",
                                      details={"day_of_week": "invalid"}) from exc
            if not 0 <= dow <= 6:
                raise ValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)",
                                      details={"day_of_week": "invalid"})
            rule.day_of_week = dow
        if rule.frequency == RuleFrequency.WEEKLY and rule.day_of_week is None:
            rule.day_of_week = DEFAULT_WEEKLY_DAY
        if "stop_statuses" in data:
            rule.stop_statuses = [
                parse_enum(TaskStatus, s, field="stop_statuses").value
                for s in (data["stop_statuses"] or [])
            ]
        if "only_future" in data:
            rule.only_future = parse_bool(data["only_future"], "only_future", default=True)
        if "recipients" in data:
            emails = []
            for raw in data["recipients"] or []:
                email = normalize_email(raw)
                if email not in emails:
                    emails.append(email)
            rule.recipients = emails

        commit_or_raise("save notification rule")
        logger.info("Notification rule %s saved (%s)", rule.id, rule.topic, extra={"rule_id": rule.id})
        return rule

    @staticmethod
    def describe_schedule(rule: NotificationRule) -> str:
        at = (rule.send_time or time(7, 30)).strftime("%H:%M")
        if rule.frequency == RuleFrequency.WEEKLY:
            day = rule.day_of_week if rule.day_of_week is not None else DEFAULT_WEEKLY_DAY
            return f"Weekly on {_DAY_NAMES[day]} at {at} ({rule.timezone})"
        if rule.frequency == RuleFrequency.WEEKDAYS:
            return f"Weekdays at {at} ({rule.timezone})"
        return f"Daily at {at} ({rule.timezone})"
