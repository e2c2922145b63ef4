"""
Renewal state-machine tests.

    TO_NOTIFY → NOTIFIED → CONFIRMED → TO_INVOICE → INVOICED
    NOT_RENEWED from every non-terminal stage

Covers the transition table, the stage-1 notice (sent with the stage
change or not at all) and the stage-2 notice (claimed once per item).
"""

from datetime import date, timedelta
from unittest.mock import patch

import pytest

from fieldops.core.exceptions import InvalidTransitionError, TransportError, ValidationError
from fieldops.models import db
from fieldops.models.enums import AlertChannel, OperatorRole, RenewalItemType, RenewalStage
from fieldops.models.renewal import RenewalItem
from fieldops.models.scheduling import AlertLogEntry
from fieldops.services import renewal_lifecycle, scheduled_jobs
from fieldops.services.email_service import EmailService


@pytest.fixture()
def make_renewal(acme, installation):
    def _make(*, stage=RenewalStage.TO_NOTIFY, reference="LIC-2026-001",
              item_type=RenewalItemType.LICENSE, due_date=date(2026, 12, 31), client_id=None):
        item = RenewalItem(
            client_id=client_id or acme.id, installation_id=installation.id,
            item_type=item_type, reference=reference, due_date=due_date, stage=stage,
        )
        db.session.add(item)
        db.session.commit()
        return item
    return _make


def _reload(item_id) -> RenewalItem:
    db.session.expire_all()
    return db.session.get(RenewalItem, item_id)


class TestTransitionTable:

    @pytest.mark.parametrize("stage,expected", [
        (RenewalStage.TO_NOTIFY, {"notify_stage1", "confirm", "mark_not_renewed"}),
        (RenewalStage.NOTIFIED, {"confirm", "mark_not_renewed"}),
        (RenewalStage.CONFIRMED, {"request_invoice", "mark_not_renewed"}),
        (RenewalStage.TO_INVOICE, {"mark_invoiced", "mark_not_renewed"}),
        (RenewalStage.INVOICED, set()),
        (RenewalStage.NOT_RENEWED, set()),
    ])
    def test_available_actions(self, stage, expected):
        item = RenewalItem(item_type=RenewalItemType.LICENSE, stage=stage)
        assert set(renewal_lifecycle.available_actions(item)) == expected

    def test_unknown_action_is_invalid(self):
        item = RenewalItem(item_type=RenewalItemType.LICENSE, stage=RenewalStage.TO_NOTIFY)
        result = renewal_lifecycle.validate_renewal_transition(item, "archive")
        assert result["valid"] is False
        assert "Unknown action" in result["reason"]


class TestStage1:

    def test_notify_moves_to_notified_and_logs(self, make_renewal, supervisor):
        item = make_renewal()

        result = renewal_lifecycle.notify_stage1(item.id, supervisor.id,
                                                 recipient_email="Buyer@Example.com")

        assert result["previous_stage"] == "TO_NOTIFY"
        assert result["new_stage"] == "NOTIFIED"
        assert result["item"]["stage1_recipient"] == "buyer@example.com"
        assert result["alert"]["channel"] == AlertChannel.RENEWAL_STAGE_1.value
        assert result["alert"]["email_sent"] is True

        entry = AlertLogEntry.query.one()
        assert entry.entity_type == "renewal"
        assert entry.entity_id == item.id
        assert entry.sender_operator_id == supervisor.id
        assert entry.subject == "[FieldOps] Renewal to confirm - ACME Retail"

    def test_log_only_notice(self, make_renewal, supervisor):
        item = make_renewal()
        with patch.object(EmailService, "send") as send:
            result = renewal_lifecycle.notify_stage1(item.id, supervisor.id,
                                                     recipient_email="buyer@example.com",
                                                     send_email=False)
        send.assert_not_called()
        assert result["alert"]["email_sent"] is False
        assert _reload(item.id).stage == RenewalStage.NOTIFIED

    def test_transport_failure_leaves_stage_and_log_untouched(self, make_renewal, supervisor):
        item = make_renewal()
        with patch.object(EmailService, "send", side_effect=TransportError("buyer@example.com", "timeout")):
            with pytest.raises(TransportError):
                renewal_lifecycle.notify_stage1(item.id, supervisor.id,
                                                recipient_email="buyer@example.com")
        stored = _reload(item.id)
        assert stored.stage == RenewalStage.TO_NOTIFY
        assert stored.stage1_notified_at is None
        assert AlertLogEntry.query.count() == 0

    def test_recipient_required(self, make_renewal, supervisor):
        item = make_renewal()
        with pytest.raises(ValidationError):
            renewal_lifecycle.notify_stage1(item.id, supervisor.id)
        assert _reload(item.id).stage == RenewalStage.TO_NOTIFY

    def test_invalid_email_rejected(self, make_renewal, supervisor):
        item = make_renewal()
        with pytest.raises(ValidationError):
            renewal_lifecycle.notify_stage1(item.id, supervisor.id, recipient_email="not-an-email")

    def test_second_notice_conflicts(self, make_renewal, supervisor):
        item = make_renewal(stage=RenewalStage.NOTIFIED)
        with pytest.raises(InvalidTransitionError) as exc_info:
            renewal_lifecycle.notify_stage1(item.id, supervisor.id, recipient_email="buyer@example.com")
        assert exc_info.value.current_state == "NOTIFIED"
        assert AlertLogEntry.query.count() == 0


class TestConfirmAndInvoice:

    def test_request_invoice_from_to_notify_fails(self, make_renewal, supervisor):
        item = make_renewal()
        with pytest.raises(InvalidTransitionError) as exc_info:
            renewal_lifecycle.request_invoice(item.id, supervisor.id)
        assert exc_info.value.current_state == "TO_NOTIFY"
        assert _reload(item.id).stage == RenewalStage.TO_NOTIFY

    def test_confirm_then_request_invoice_sends_one_stage2_notice(self, make_renewal, supervisor, admin):
        item = make_renewal()

        confirmed = renewal_lifecycle.confirm(item.id, supervisor.id)
        assert confirmed["new_stage"] == "CONFIRMED"
        assert confirmed["item"]["confirmed_by_operator_id"] == supervisor.id

        with patch.object(EmailService, "send", return_value="dev-1") as send:
            result = renewal_lifecycle.request_invoice(item.id, supervisor.id)

        assert result["new_stage"] == "TO_INVOICE"
        assert result["stage2"]["sent"] == 1
        assert result["stage2"]["items"] == [item.id]
        assert send.call_count == 1
        assert send.call_args.kwargs["to_email"] == admin.email
        assert AlertLogEntry.query.filter_by(channel=AlertChannel.RENEWAL_STAGE_2).count() == 1
        assert _reload(item.id).stage2_notified_at is not None

    def test_stage2_is_claimed_once(self, make_renewal, supervisor, admin):
        from fieldops.services.alert_dispatcher import AlertDispatcher

        item = make_renewal(stage=RenewalStage.CONFIRMED)
        renewal_lifecycle.request_invoice(item.id, supervisor.id)

        again = AlertDispatcher.dispatch_renewal_stage2([_reload(item.id)])
        assert again["sent"] == 0
        assert again["reason"] == "already_notified"
        assert AlertLogEntry.query.filter_by(channel=AlertChannel.RENEWAL_STAGE_2).count() == 1

    def test_stage2_failure_releases_claim(self, make_renewal, supervisor, admin):
        item = make_renewal(stage=RenewalStage.CONFIRMED)
        with patch.object(EmailService, "send", side_effect=TransportError(admin.email, "refused")):
            result = renewal_lifecycle.request_invoice(item.id, supervisor.id)

        assert result["new_stage"] == "TO_INVOICE"
        assert result["stage2"]["failed"] == 1
        stored = _reload(item.id)
        assert stored.stage == RenewalStage.TO_INVOICE
        assert stored.stage2_notified_at is None
        assert AlertLogEntry.query.count() == 0
        assert renewal_lifecycle.pending_stage2_by_client() == {item.client_id: [stored]}

    def test_stage2_without_recipients(self, make_renewal, supervisor):
        supervisor.alerts_enabled = False
        db.session.commit()
        item = make_renewal(stage=RenewalStage.CONFIRMED)
        result = renewal_lifecycle.request_invoice(item.id, supervisor.id)
        assert result["stage2"]["reason"] == "no_recipients"
        assert _reload(item.id).stage2_notified_at is None

    def test_stage2_goes_to_one_default_recipient(self, make_renewal, make_operator, supervisor, admin):
        make_operator(name="Bruno Billing", role=OperatorRole.ADMINISTRATION, email="bruno@example.com")
        make_operator(name="Carla Watcher", role=OperatorRole.TECHNICIAN, email="carla@example.com",
                      all_status_changes=True)
        item = make_renewal(stage=RenewalStage.CONFIRMED)

        with patch.object(EmailService, "send", return_value="dev-1") as send:
            result = renewal_lifecycle.request_invoice(item.id, supervisor.id)

        assert result["stage2"]["sent"] == 1
        assert send.call_count == 1
        assert send.call_args.kwargs["to_email"] == admin.email
        entries = AlertLogEntry.query.filter_by(channel=AlertChannel.RENEWAL_STAGE_2).all()
        assert [e.recipient_email for e in entries] == [admin.email]
        assert _reload(item.id).stage2_recipient == admin.email

    def test_stage2_falls_back_to_any_alert_enabled_operator(self, make_renewal, supervisor):
        item = make_renewal(stage=RenewalStage.CONFIRMED)
        with patch.object(EmailService, "send", return_value="dev-1") as send:
            result = renewal_lifecycle.request_invoice(item.id, supervisor.id)
        assert result["stage2"]["sent"] == 1
        assert send.call_args.kwargs["to_email"] == supervisor.email

    def test_failed_stage2_is_retried_next_day_exactly_once(self, app, make_renewal, supervisor, admin,
                                                             frozen_clock):
        item = make_renewal(stage=RenewalStage.CONFIRMED)
        with patch.object(EmailService, "send", side_effect=TransportError(admin.email, "refused")):
            renewal_lifecycle.request_invoice(item.id, supervisor.id)
        assert _reload(item.id).stage2_notified_at is None

        frozen_clock.advance(timedelta(days=1))
        with patch.object(EmailService, "send", return_value="dev-2") as send:
            retried = scheduled_jobs.sweep_renewal_stage2(app)
        assert retried["sent"] == 1
        assert send.call_count == 1
        assert send.call_args.kwargs["to_email"] == admin.email

        frozen_clock.advance(timedelta(days=1))
        with patch.object(EmailService, "send", return_value="dev-3") as send:
            again = scheduled_jobs.sweep_renewal_stage2(app)
        assert again["sent"] == 0
        send.assert_not_called()
        assert AlertLogEntry.query.filter_by(channel=AlertChannel.RENEWAL_STAGE_2).count() == 1

    def test_mark_invoiced(self, make_renewal, supervisor):
        item = make_renewal(stage=RenewalStage.TO_INVOICE)
        result = renewal_lifecycle.mark_invoiced(item.id, "INV-R-1", supervisor.id)
        assert result["new_stage"] == "INVOICED"
        assert result["item"]["invoice_number"] == "INV-R-1"

    def test_mark_invoiced_requires_number(self, make_renewal, supervisor):
        item = make_renewal(stage=RenewalStage.TO_INVOICE)
        with pytest.raises(ValidationError):
            renewal_lifecycle.mark_invoiced(item.id, "", supervisor.id)


class TestNotRenewed:

    @pytest.mark.parametrize("stage", [
        RenewalStage.TO_NOTIFY, RenewalStage.NOTIFIED, RenewalStage.CONFIRMED, RenewalStage.TO_INVOICE,
    ])
    def test_from_non_terminal_stage(self, make_renewal, supervisor, stage):
        item = make_renewal(stage=stage)
        result = renewal_lifecycle.mark_not_renewed(item.id, supervisor.id)
        assert result["new_stage"] == "NOT_RENEWED"
        assert result["item"]["not_renewed_at"] is not None

    @pytest.mark.parametrize("stage", [RenewalStage.INVOICED, RenewalStage.NOT_RENEWED])
    def test_from_terminal_stage_fails(self, make_renewal, supervisor, stage):
        item = make_renewal(stage=stage)
        with pytest.raises(InvalidTransitionError) as exc_info:
            renewal_lifecycle.mark_not_renewed(item.id, supervisor.id)
        assert exc_info.value.current_state == stage.value


class TestRenewalAPI:

    def test_get_renewal_lists_actions(self, client, make_renewal):
        item = make_renewal(stage=RenewalStage.CONFIRMED)
        res = client.get(f"/api/v1/renewals/{item.id}")
        assert res.status_code == 200
        assert set(res.get_json()["available_actions"]) == {"request_invoice", "mark_not_renewed"}

    def test_request_invoice_conflict_is_409(self, client, make_renewal, supervisor):
        item = make_renewal()
        res = client.post(f"/api/v1/renewals/{item.id}/request-invoice", json={"actor_id": supervisor.id})
        assert res.status_code == 409
        assert res.get_json()["details"]["current_state"] == "TO_NOTIFY"

    def test_notify_stage1_transport_failure_is_502(self, client, make_renewal, supervisor):
        item = make_renewal()
        with patch.object(EmailService, "send", side_effect=TransportError("b@example.com", "down")):
            res = client.post(f"/api/v1/renewals/{item.id}/notify-stage1", json={
                "actor_id": supervisor.id, "recipient_email": "b@example.com",
            })
        assert res.status_code == 502
        assert res.get_json()["details"]["retryable"] is True

    def test_full_flow(self, client, make_renewal, supervisor, admin):
        item = make_renewal()
        headers = {"X-Operator-Id": str(supervisor.id)}
        assert client.post(f"/api/v1/renewals/{item.id}/notify-stage1", headers=headers,
                           json={"recipient_operator_id": admin.id}).status_code == 200
        assert client.post(f"/api/v1/renewals/{item.id}/confirm", headers=headers).status_code == 200
        res = client.post(f"/api/v1/renewals/{item.id}/request-invoice", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["stage2"]["sent"] == 1
        res = client.post(f"/api/v1/renewals/{item.id}/invoice", headers=headers,
                          json={"invoice_number": "INV-R-9"})
        assert res.status_code == 200
        assert res.get_json()["new_stage"] == "INVOICED"
