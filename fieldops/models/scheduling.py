"""
FieldOps Service Workflow
Alerting & scheduling models.

Models:
    - AlertLogEntry: immutable record of one dispatched alert; also the dedup ledger
    - NotificationRule: per-topic recurring reminder configuration
    - ScheduledJob: persisted schedule registry (run history)
"""

from datetime import datetime, time, timezone

from fieldops.models import db
from fieldops.models.enums import (
    DEFAULT_STOP_STATUSES,
    AlertChannel,
    RuleFrequency,
    RuleMode,
)

DEFAULT_RULE_TIMEZONE = "Europe/Rome"


class AlertLogEntry(db.Model):
    """
    Outbound alert audit log.

    One row per (alert, recipient). Rows for automatic channels carry a
    ``dedup_day``; the unique constraint below then guarantees at most one
    alert per channel, entity, recipient and organizational calendar day,
    whatever the number of concurrent dispatchers. Manual rows leave
    ``dedup_day`` NULL and are never deduplicated (NULLs are distinct).
    Due-date reminders also carry a ``reminder_trigger`` (``auto_60``, ``auto_30``,
    ...) and are limited to one row per entity and trigger.
    """

    __tablename__ = "alert_log_entries"
    __table_args__ = (
        db.UniqueConstraint(
            "channel", "entity_type", "entity_id", "dedup_day", "recipient_email",
            name="uq_alert_log_dedup",
        ),
        db.UniqueConstraint(
            "channel", "entity_type", "entity_id", "reminder_trigger",
            name="uq_alert_log_trigger",
        ),
        db.Index("ix_alert_log_entity", "entity_type", "entity_id"),
        db.Index("ix_alert_log_channel_created", "channel", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    channel = db.Column(db.Enum(AlertChannel, native_enum=False, length=40), nullable=False)

    entity_type = db.Column(db.String(30), nullable=False, default="",
                            comment="intervention / renewal / notification_rule / client")
    entity_id = db.Column(db.Integer, nullable=True)
    related_ids = db.Column(db.JSON, default=list, comment="Entity ids covered by a batched alert")
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)

    recipient_operator_id = db.Column(
        db.Integer, db.ForeignKey("operators.id", ondelete="SET NULL"), nullable=True,
    )
    recipient_email = db.Column(db.String(255), nullable=True)
    recipient_name = db.Column(db.String(150), nullable=True)
    sender_operator_id = db.Column(
        db.Integer, db.ForeignKey("operators.id", ondelete="SET NULL"), nullable=True,
    )
    sender_label = db.Column(db.String(150), nullable=True)

    subject = db.Column(db.String(500), nullable=False, default="")
    body = db.Column(db.Text, nullable=False, default="")
    email_sent = db.Column(db.Boolean, nullable=False, default=False)

    dedup_day = db.Column(db.Date, nullable=True,
                          comment="Organizational-timezone day; set for automatic channels only")
    reminder_trigger = db.Column(db.String(20), nullable=True,
                                 comment="Reminder threshold, e.g. auto_30; one alert per entity and trigger")
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "channel": self.channel.value if self.channel else None,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "related_ids": list(self.related_ids or []),
            "client_id": self.client_id,
            "recipient_operator_id": self.recipient_operator_id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "sender_operator_id": self.sender_operator_id,
            "sender_label": self.sender_label,
            "subject": self.subject,
            "body": self.body,
            "email_sent": self.email_sent,
            "dedup_day": self.dedup_day.isoformat() if self.dedup_day else None,
            "reminder_trigger": self.reminder_trigger,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AlertLogEntry {self.id}: {self.channel.value if self.channel else '?'} → {self.recipient_email}>"


class NotificationRule(db.Model):
    """
    Recurring reminder configuration for one notification topic.

    A topic is the pair (task_key, target): "remind the WAREHOUSE audience
    about open 'ship-hardware' tasks". Editing a rule never touches the
    alert log, so past dispatch history is unaffected.
    """

    __tablename__ = "notification_rules"
    __table_args__ = (
        db.UniqueConstraint("task_key", "target", name="uq_notification_rule_topic"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_key = db.Column(db.String(100), nullable=False, comment="Task template identifier")
    task_title = db.Column(db.String(300), nullable=False, default="")
    target = db.Column(db.String(50), nullable=False, default="GENERAL", comment="Audience tag")

    enabled = db.Column(db.Boolean, nullable=False, default=True)
    mode = db.Column(db.Enum(RuleMode, native_enum=False, length=20),
                     nullable=False, default=RuleMode.MANUAL)
    recipients = db.Column(db.JSON, default=list, comment="Extra recipient emails")

    frequency = db.Column(db.Enum(RuleFrequency, native_enum=False, length=20),
                          nullable=False, default=RuleFrequency.DAILY)
    send_time = db.Column(db.Time, nullable=False, default=time(7, 30))
    timezone = db.Column(db.String(64), nullable=False, default=DEFAULT_RULE_TIMEZONE)
    day_of_week = db.Column(db.Integer, nullable=True, comment="0=Sunday … 6=Saturday (WEEKLY only)")

    stop_statuses = db.Column(db.JSON, default=lambda: list(DEFAULT_STOP_STATUSES))
    only_future = db.Column(db.Boolean, nullable=False, default=True)
    last_sent_on = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    @property
    def topic(self) -> str:
        return f"{self.task_key}|{self.target}"

    def to_dict(self):
        return {
            "id": self.id,
            "task_key": self.task_key,
            "task_title": self.task_title,
            "target": self.target,
            "topic": self.topic,
            "enabled": self.enabled,
            "mode": self.mode.value if self.mode else None,
            "recipients": list(self.recipients or []),
            "frequency": self.frequency.value if self.frequency else None,
            "send_time": self.send_time.strftime("%H:%M") if self.send_time else None,
            "timezone": self.timezone,
            "day_of_week": self.day_of_week,
            "stop_statuses": list(self.stop_statuses or []),
            "only_future": self.only_future,
            "last_sent_on": self.last_sent_on.isoformat() if self.last_sent_on else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<NotificationRule {self.id}: {self.topic} [{self.frequency.value if self.frequency else '?'}]>"


class ScheduledJob(db.Model):
    """
    Registry of scheduled jobs.

    Tracks job configuration, last run time, and run history. The jobs
    themselves are invoked by an external cron trigger.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="invoice_due_sweep, renewal_stage2_sweep, ...")
    description = db.Column(db.String(500), default="")
    schedule_config = db.Column(db.JSON, default=dict)
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True,
                                comment="success, failed, skipped")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Record a job execution."""
        self.last_run_at = datetime.now(timezone.utc)
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_config": self.schedule_config,
            "is_enabled": self.is_enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name}>"
