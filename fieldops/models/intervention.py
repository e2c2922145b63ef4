"""
FieldOps Service Workflow
Intervention model — one field service visit under a contract.

State is explicit: ``state`` + ``outcome`` are the only source of truth
for the lifecycle. Invariants (enforced by intervention_lifecycle):
    - outcome IS NOT NULL  <=>  state == CLOSED
    - invoice_number and invoiced_on are set together, only once issued
"""

from datetime import datetime, timezone

from fieldops.models import db
from fieldops.models.enums import InterventionState, InvoiceOutcome


class Intervention(db.Model):
    __tablename__ = "interventions"
    __table_args__ = (
        db.Index("ix_interventions_contract_included", "contract_id", "included"),
        db.Index("ix_interventions_invoice_due", "state", "outcome", "invoice_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(
        db.Integer, db.ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    installation_id = db.Column(
        db.Integer, db.ForeignKey("installations.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    performed_on = db.Column(db.Date, nullable=False)
    description = db.Column(db.Text, default="")
    included = db.Column(db.Boolean, nullable=False, default=False,
                         comment="Counted against the contract quota")

    # Invoice routing
    proforma = db.Column(db.String(100), nullable=True)
    warehouse_code = db.Column(db.String(50), nullable=True)

    # Lifecycle
    state = db.Column(
        db.Enum(InterventionState, native_enum=False, length=10),
        nullable=False, default=InterventionState.OPEN,
    )
    outcome = db.Column(db.Enum(InvoiceOutcome, native_enum=False, length=30), nullable=True)
    invoice_number = db.Column(db.String(100), nullable=True)
    invoiced_on = db.Column(db.Date, nullable=True)

    notes = db.Column(db.Text, nullable=True)
    technical_notes = db.Column(db.Text, nullable=True, comment="Append-only log")

    closed_by_operator_id = db.Column(
        db.Integer, db.ForeignKey("operators.id", ondelete="SET NULL"), nullable=True,
    )
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    contract = db.relationship("Contract", lazy="joined")
    installation = db.relationship("Installation", lazy="joined")

    @property
    def is_invoice_due(self) -> bool:
        return (
            self.state == InterventionState.CLOSED
            and self.outcome == InvoiceOutcome.TO_INVOICE
            and not self.invoice_number
        )

    def to_dict(self):
        return {
            "id": self.id,
            "contract_id": self.contract_id,
            "installation_id": self.installation_id,
            "installation_name": self.installation.name if self.installation else None,
            "performed_on": self.performed_on.isoformat() if self.performed_on else None,
            "description": self.description,
            "included": self.included,
            "proforma": self.proforma,
            "warehouse_code": self.warehouse_code,
            "state": self.state.value if self.state else None,
            "outcome": self.outcome.value if self.outcome else None,
            "invoice_number": self.invoice_number,
            "invoiced_on": self.invoiced_on.isoformat() if self.invoiced_on else None,
            "notes": self.notes,
            "technical_notes": self.technical_notes,
            "closed_by_operator_id": self.closed_by_operator_id,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "invoice_due": self.is_invoice_due,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Intervention {self.id} [{self.state.value if self.state else '?'}]>"
