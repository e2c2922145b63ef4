"""
FieldOps Service Workflow
Client, installation and contract models.

Models:
    - Client: customer organisation
    - Installation: an installation project record (parent of interventions)
    - InstallationTask: checklist task on an installation, governed by notification rules
    - Contract: service contract carrying the included-intervention quota
"""

from datetime import datetime, timezone

from fieldops.models import db
from fieldops.models.enums import TaskStatus


def _utcnow():
    return datetime.now(timezone.utc)


class Client(db.Model):
    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {"id": self.id, "name": self.name}

    def __repr__(self):
        return f"<Client {self.id}: {self.name}>"


class Installation(db.Model):
    """
    Installation project record.

    ``hard_date`` is the contractual (mandatory) installation date and wins
    over ``planned_date`` when both are set.
    """

    __tablename__ = "installations"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    planned_date = db.Column(db.Date, nullable=True)
    hard_date = db.Column(db.Date, nullable=True)
    proforma = db.Column(db.String(100), nullable=True, comment="Pro-forma / invoice routing reference")
    warehouse_code = db.Column(db.String(50), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    client = db.relationship("Client", lazy="joined")
    tasks = db.relationship(
        "InstallationTask", backref="installation", lazy="select", cascade="all, delete-orphan",
    )

    @property
    def effective_date(self):
        return self.hard_date or self.planned_date

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "name": self.name,
            "planned_date": self.planned_date.isoformat() if self.planned_date else None,
            "hard_date": self.hard_date.isoformat() if self.hard_date else None,
            "proforma": self.proforma,
            "warehouse_code": self.warehouse_code,
        }

    def __repr__(self):
        return f"<Installation {self.id}: {self.name}>"


class InstallationTask(db.Model):
    """Checklist task; the unit a NotificationRule reminds people about."""

    __tablename__ = "installation_tasks"

    id = db.Column(db.Integer, primary_key=True)
    installation_id = db.Column(
        db.Integer, db.ForeignKey("installations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    task_key = db.Column(db.String(100), nullable=False, index=True,
                         comment="Task template identifier")
    title = db.Column(db.String(300), nullable=False)
    target = db.Column(db.String(50), nullable=False, default="GENERAL",
                       comment="Audience tag: GENERAL, WAREHOUSE, SW_TECHNICIAN, ...")
    status = db.Column(
        db.Enum(TaskStatus, native_enum=False, length=20), nullable=False, default=TaskStatus.TODO,
    )
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Fields read by the notification rule scheduler
    @property
    def schedule_status(self):
        return self.status.value if self.status else None

    @property
    def schedule_date(self):
        return self.installation.effective_date if self.installation else None

    def to_dict(self):
        return {
            "id": self.id,
            "installation_id": self.installation_id,
            "task_key": self.task_key,
            "title": self.title,
            "target": self.target,
            "status": self.status.value if self.status else None,
        }


class Contract(db.Model):
    """
    Service contract.

    ``included_quota`` is the annual number of interventions covered by the
    plan; ``unlimited`` overrides it. Contracts are superseded, never deleted.
    """

    __tablename__ = "contracts"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    plan_code = db.Column(db.String(50), nullable=False)
    expires_on = db.Column(db.Date, nullable=True, comment="NULL = evergreen")
    included_quota = db.Column(db.Integer, nullable=True)
    unlimited = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    client = db.relationship("Client", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "plan_code": self.plan_code,
            "expires_on": self.expires_on.isoformat() if self.expires_on else None,
            "included_quota": self.included_quota,
            "unlimited": self.unlimited,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Contract {self.id}: {self.plan_code} client={self.client_id}>"
