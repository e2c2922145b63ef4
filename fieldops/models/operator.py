"""
FieldOps Service Workflow
Operator directory model.

Models:
    - Operator: staff member who can act on items and receive alerts
"""

from datetime import datetime, timezone

from fieldops.models import db
from fieldops.models.enums import OperatorRole


class Operator(db.Model):
    """
    Directory entry.

    Alert subscription settings:
        alerts_enabled       master switch for every automatic alert
        all_status_changes   receive every lifecycle alert regardless of topic
        alert_topics         explicit topic subscriptions (channel values or rule topics)
    """

    __tablename__ = "operators"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), nullable=True, index=True)
    role = db.Column(db.Enum(OperatorRole, native_enum=False, length=30), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    alerts_enabled = db.Column(db.Boolean, nullable=False, default=True)
    all_status_changes = db.Column(db.Boolean, nullable=False, default=False)
    alert_topics = db.Column(db.JSON, default=list)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="SET NULL"), nullable=True,
        comment="Assigned client (client-scoped alerts only)",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def is_subscribed_to(self, topic: str) -> bool:
        return topic in (self.alert_topics or [])

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value if self.role else None,
            "is_active": self.is_active,
            "alerts_enabled": self.alerts_enabled,
            "all_status_changes": self.all_status_changes,
            "alert_topics": list(self.alert_topics or []),
            "client_id": self.client_id,
        }

    def __repr__(self):
        return f"<Operator {self.id}: {self.name} [{self.role.value if self.role else '?'}]>"
