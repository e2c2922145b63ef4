"""
Intervention state-machine tests.

    OPEN --close(outcome)--> CLOSED --reopen (SUPERVISOR / PROJECT_MANAGER)--> OPEN
    CLOSED + TO_INVOICE --mark_invoiced(number)--> CLOSED, invoiced

For each transition:
    - the valid edge updates state, outcome and the technical notes
    - an invalid edge raises InvalidTransitionError carrying the stored state
    - the API maps the failure to 409 / 403 / 422
"""

from datetime import date
from unittest.mock import patch

import pytest

from fieldops.core.exceptions import (
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from fieldops.models import db
from fieldops.models.enums import AlertChannel, InterventionState, InvoiceOutcome, OperatorRole
from fieldops.models.intervention import Intervention
from fieldops.models.scheduling import AlertLogEntry
from fieldops.services import intervention_lifecycle
from fieldops.services.email_service import EmailService

TODAY = date(2026, 10, 19)


def _reload(iv_id) -> Intervention:
    db.session.expire_all()
    return db.session.get(Intervention, iv_id)


class TestClose:

    def test_close_to_invoice_sends_invoice_due_alert(self, make_intervention, technician, admin):
        iv = make_intervention()

        result = intervention_lifecycle.close(iv.id, "TO_INVOICE", technician.id,
                                              note="Replaced power supply")

        assert result["previous_state"] == "OPEN"
        assert result["new_state"] == "CLOSED"
        assert result["intervention"]["outcome"] == "TO_INVOICE"
        assert result["intervention"]["invoice_due"] is True
        assert "Closed (TO_INVOICE): Replaced power supply" in result["intervention"]["technical_notes"]
        assert result["alerts"]["sent"] == 1

        entry = AlertLogEntry.query.filter_by(channel=AlertChannel.AUTOMATIC_INVOICE_DUE).one()
        assert entry.entity_id == iv.id
        assert entry.recipient_email == admin.email
        assert entry.dedup_day == TODAY

    def test_close_without_invoice_sends_nothing(self, make_intervention, technician, admin):
        iv = make_intervention()
        result = intervention_lifecycle.close(iv.id, InvoiceOutcome.DO_NOT_INVOICE, technician.id)
        assert result["alerts"] is None
        assert AlertLogEntry.query.count() == 0

    def test_close_twice_conflicts(self, make_intervention, technician):
        iv = make_intervention(state=InterventionState.CLOSED, outcome=InvoiceOutcome.DO_NOT_INVOICE)
        with pytest.raises(InvalidTransitionError) as exc_info:
            intervention_lifecycle.close(iv.id, "TO_INVOICE", technician.id)
        assert exc_info.value.current_state == "CLOSED"
        assert _reload(iv.id).outcome == InvoiceOutcome.DO_NOT_INVOICE

    def test_close_rejects_unknown_outcome(self, make_intervention, technician):
        iv = make_intervention()
        with pytest.raises(ValidationError):
            intervention_lifecycle.close(iv.id, "MAYBE", technician.id)
        assert _reload(iv.id).state == InterventionState.OPEN

    def test_close_requires_actor(self, make_intervention):
        iv = make_intervention()
        with pytest.raises(ValidationError):
            intervention_lifecycle.close(iv.id, "TO_INVOICE", None)

    def test_inactive_actor_denied(self, make_intervention, make_operator):
        ghost = make_operator(name="Gone", role=OperatorRole.TECHNICIAN, is_active=False)
        iv = make_intervention()
        with pytest.raises(PermissionDeniedError):
            intervention_lifecycle.close(iv.id, "TO_INVOICE", ghost.id)


class TestReopen:

    def test_supervisor_reopens_and_audit_is_logged(self, make_intervention, technician, supervisor):
        iv = make_intervention()
        intervention_lifecycle.close(iv.id, "DO_NOT_INVOICE", technician.id)

        result = intervention_lifecycle.reopen(iv.id, supervisor.id)

        assert result["new_state"] == "OPEN"
        reopened = _reload(iv.id)
        assert reopened.state == InterventionState.OPEN
        assert reopened.outcome is None
        assert reopened.closed_at is None
        assert reopened.technical_notes.endswith("Sergio Supervisor] Reopened")

        audit = AlertLogEntry.query.filter_by(channel=AlertChannel.INTERVENTION_REOPENED).one()
        assert audit.entity_id == iv.id
        assert audit.email_sent is False
        assert audit.sender_operator_id == supervisor.id
        assert audit.recipient_email is None

    def test_notes_are_appended_not_replaced(self, make_intervention, technician, supervisor):
        iv = make_intervention()
        intervention_lifecycle.close(iv.id, "DO_NOT_INVOICE", technician.id, note="first")
        intervention_lifecycle.reopen(iv.id, supervisor.id)
        intervention_lifecycle.close(iv.id, "DO_NOT_INVOICE", technician.id, note="second")

        lines = _reload(iv.id).technical_notes.splitlines()
        assert len(lines) == 3
        assert lines[0].endswith("Closed (DO_NOT_INVOICE): first")
        assert lines[1].endswith("Reopened")
        assert lines[2].endswith("Closed (DO_NOT_INVOICE): second")

    def test_technician_cannot_reopen(self, make_intervention, technician):
        iv = make_intervention(state=InterventionState.CLOSED, outcome=InvoiceOutcome.DO_NOT_INVOICE)

        with pytest.raises(PermissionDeniedError):
            intervention_lifecycle.reopen(iv.id, technician.id)

        stored = _reload(iv.id)
        assert stored.state == InterventionState.CLOSED
        assert stored.outcome == InvoiceOutcome.DO_NOT_INVOICE
        assert AlertLogEntry.query.count() == 0

    def test_project_manager_may_reopen(self, make_intervention, make_operator):
        pm = make_operator(name="Paola PM", role=OperatorRole.PROJECT_MANAGER)
        iv = make_intervention(state=InterventionState.CLOSED, outcome=InvoiceOutcome.DO_NOT_INVOICE)
        assert intervention_lifecycle.reopen(iv.id, pm.id)["new_state"] == "OPEN"

    def test_reopen_open_intervention_conflicts(self, make_intervention, supervisor):
        iv = make_intervention()
        with pytest.raises(InvalidTransitionError) as exc_info:
            intervention_lifecycle.reopen(iv.id, supervisor.id)
        assert exc_info.value.current_state == "OPEN"

    def test_invoiced_intervention_cannot_be_reopened(self, make_intervention, supervisor):
        iv = make_intervention(state=InterventionState.CLOSED, invoice_number="INV-1")
        with pytest.raises(InvalidTransitionError) as exc_info:
            intervention_lifecycle.reopen(iv.id, supervisor.id)
        assert "INV-1" in str(exc_info.value)
        assert _reload(iv.id).state == InterventionState.CLOSED


class TestMarkInvoiced:

    def test_sets_number_and_defaults_date_to_today(self, make_intervention):
        iv = make_intervention(state=InterventionState.CLOSED, outcome=InvoiceOutcome.TO_INVOICE)

        result = intervention_lifecycle.mark_invoiced(iv.id, "INV-100")

        assert result["intervention"]["invoice_number"] == "INV-100"
        assert result["intervention"]["invoiced_on"] == TODAY.isoformat()
        assert result["intervention"]["invoice_due"] is False
        assert result["intervention"]["state"] == "CLOSED"

    def test_explicit_invoice_date(self, make_intervention):
        iv = make_intervention(state=InterventionState.CLOSED)
        result = intervention_lifecycle.mark_invoiced(iv.id, " INV-7 ", date(2026, 10, 1))
        assert result["intervention"]["invoice_number"] == "INV-7"
        assert result["intervention"]["invoiced_on"] == "2026-10-01"

    def test_blank_number_is_validation_error(self, make_intervention):
        iv = make_intervention(state=InterventionState.CLOSED)
        with pytest.raises(ValidationError):
            intervention_lifecycle.mark_invoiced(iv.id, "   ")
        assert _reload(iv.id).invoice_number is None

    def test_do_not_invoice_outcome_rejected(self, make_intervention):
        iv = make_intervention(state=InterventionState.CLOSED, outcome=InvoiceOutcome.DO_NOT_INVOICE)
        with pytest.raises(InvalidTransitionError) as exc_info:
            intervention_lifecycle.mark_invoiced(iv.id, "INV-100")
        assert exc_info.value.current_state == "CLOSED"
        assert _reload(iv.id).invoice_number is None

    def test_open_intervention_rejected(self, make_intervention):
        iv = make_intervention()
        with pytest.raises(InvalidTransitionError):
            intervention_lifecycle.mark_invoiced(iv.id, "INV-100")

    def test_already_invoiced_rejected(self, make_intervention):
        iv = make_intervention(state=InterventionState.CLOSED, invoice_number="INV-1")
        with pytest.raises(InvalidTransitionError):
            intervention_lifecycle.mark_invoiced(iv.id, "INV-2")
        assert _reload(iv.id).invoice_number == "INV-1"

    def test_invoice_due_query(self, make_intervention):
        due = make_intervention(state=InterventionState.CLOSED)
        make_intervention(state=InterventionState.CLOSED, invoice_number="INV-9")
        make_intervention(state=InterventionState.CLOSED, outcome=InvoiceOutcome.INCLUDED_IN_SUMMARY)
        make_intervention()
        assert [iv.id for iv in intervention_lifecycle.invoice_due_query()] == [due.id]


class TestInterventionAPI:

    def test_close_and_reopen_flow(self, client, make_intervention, technician, supervisor, admin):
        iv = make_intervention()

        res = client.post(f"/api/v1/interventions/{iv.id}/close",
                          json={"outcome": "TO_INVOICE", "actor_id": technician.id})
        assert res.status_code == 200
        assert res.get_json()["alerts"]["sent"] == 1

        res = client.post(f"/api/v1/interventions/{iv.id}/reopen",
                          headers={"X-Operator-Id": str(supervisor.id)})
        assert res.status_code == 200
        assert res.get_json()["new_state"] == "OPEN"

    def test_reopen_denied_is_403(self, client, make_intervention, technician):
        iv = make_intervention(state=InterventionState.CLOSED, outcome=InvoiceOutcome.DO_NOT_INVOICE)
        res = client.post(f"/api/v1/interventions/{iv.id}/reopen", json={"actor_id": technician.id})
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_invalid_transition_is_409_with_current_state(self, client, make_intervention):
        iv = make_intervention(state=InterventionState.CLOSED, outcome=InvoiceOutcome.DO_NOT_INVOICE)
        res = client.post(f"/api/v1/interventions/{iv.id}/invoice", json={"invoice_number": "INV-1"})
        assert res.status_code == 409
        assert res.get_json()["details"]["current_state"] == "CLOSED"

    def test_blank_invoice_number_is_422(self, client, make_intervention):
        iv = make_intervention(state=InterventionState.CLOSED)
        res = client.post(f"/api/v1/interventions/{iv.id}/invoice", json={"invoice_number": ""})
        assert res.status_code == 422

    def test_invoice_due_listing_by_client(self, client, make_intervention, acme):
        make_intervention(state=InterventionState.CLOSED)
        make_intervention()
        res = client.get(f"/api/v1/interventions/invoice-due?client_id={acme.id}")
        assert res.status_code == 200
        assert res.get_json()["total"] == 1

    def test_close_survives_mail_failure(self, client, make_intervention, technician, admin,
                                         app, monkeypatch):
        iv = make_intervention()
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.example.com")
        with patch.object(EmailService, "_send_smtp", side_effect=OSError("refused")):
            res = client.post(f"/api/v1/interventions/{iv.id}/close",
                              json={"outcome": "TO_INVOICE", "actor_id": technician.id})
        assert res.status_code == 200
        body = res.get_json()
        assert body["new_state"] == "CLOSED"
        assert body["alerts"]["failed"] == 1
        assert AlertLogEntry.query.count() == 0
