"""
FieldOps Service Workflow
RenewalItem model — a recurring license / service line approaching its due date.

Stage flow (see renewal_lifecycle.RENEWAL_TRANSITIONS):
    TO_NOTIFY → NOTIFIED → CONFIRMED → TO_INVOICE → INVOICED
    any non-terminal stage → NOT_RENEWED
"""

from datetime import datetime, timezone

from fieldops.models import db
from fieldops.models.enums import RenewalItemType, RenewalStage


class RenewalItem(db.Model):
    __tablename__ = "renewal_items"
    __table_args__ = (
        db.Index("ix_renewal_items_client_stage", "client_id", "stage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    installation_id = db.Column(
        db.Integer, db.ForeignKey("installations.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    item_type = db.Column(db.Enum(RenewalItemType, native_enum=False, length=30), nullable=False)
    reference = db.Column(db.String(200), nullable=True, comment="License number, service name...")
    description = db.Column(db.Text, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    stage = db.Column(
        db.Enum(RenewalStage, native_enum=False, length=20),
        nullable=False, default=RenewalStage.TO_NOTIFY,
    )

    # Stage 1: "please confirm renewal"
    stage1_notified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stage1_recipient = db.Column(db.String(255), nullable=True)

    # Confirmation
    confirmed_by_operator_id = db.Column(
        db.Integer, db.ForeignKey("operators.id", ondelete="SET NULL"), nullable=True,
    )
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Stage 2: "ready to invoice"
    invoice_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stage2_notified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stage2_recipient = db.Column(db.String(255), nullable=True)

    invoice_number = db.Column(db.String(100), nullable=True)
    invoiced_at = db.Column(db.DateTime(timezone=True), nullable=True)
    not_renewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    client = db.relationship("Client", lazy="joined")
    installation = db.relationship("Installation", lazy="joined")

    @property
    def display_reference(self) -> str:
        return self.reference or self.description or f"#{self.id}"

    def to_dict(self):
        def _iso(v):
            return v.isoformat() if v else None

        return {
            "id": self.id,
            "client_id": self.client_id,
            "installation_id": self.installation_id,
            "item_type": self.item_type.value if self.item_type else None,
            "reference": self.reference,
            "description": self.description,
            "due_date": _iso(self.due_date),
            "stage": self.stage.value if self.stage else None,
            "stage1_notified_at": _iso(self.stage1_notified_at),
            "stage1_recipient": self.stage1_recipient,
            "confirmed_by_operator_id": self.confirmed_by_operator_id,
            "confirmed_at": _iso(self.confirmed_at),
            "invoice_requested_at": _iso(self.invoice_requested_at),
            "stage2_notified_at": _iso(self.stage2_notified_at),
            "stage2_recipient": self.stage2_recipient,
            "invoice_number": self.invoice_number,
            "invoiced_at": _iso(self.invoiced_at),
            "not_renewed_at": _iso(self.not_renewed_at),
        }

    def __repr__(self):
        return f"<RenewalItem {self.id} {self.item_type.value if self.item_type else '?'} [{self.stage.value if self.stage else '?'}]>"
