"""
FieldOps Service Workflow
Notification Rules Blueprint — rule configuration and "send now".
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from fieldops.blueprints import actor_id_from_request, json_body
from fieldops.models.scheduling import NotificationRule
from fieldops.services.helpers.storage import get_or_raise
from fieldops.services.notification_rule_service import NotificationRuleScheduler

notification_rule_bp = Blueprint("notification_rule_bp", __name__, url_prefix="/api/v1/notification-rules")


def _rule_payload(rule: NotificationRule) -> dict:
    return {**rule.to_dict(), "schedule": NotificationRuleScheduler.describe_schedule(rule)}


@notification_rule_bp.route("", methods=["GET"])
def list_rules():
    rules = NotificationRuleScheduler.list_rules()
    return jsonify({"items": [_rule_payload(r) for r in rules], "total": len(rules)})


@notification_rule_bp.route("", methods=["PUT"])
def upsert_rule():
    """Create or update the rule keyed by (task_key, target)."""
    rule = NotificationRuleScheduler.upsert_rule(json_body())
    return jsonify(_rule_payload(rule))


@notification_rule_bp.route("/<int:rule_id>/preview", methods=["GET"])
def preview_rule(rule_id):
    rule = get_or_raise(NotificationRule, rule_id)
    tasks = NotificationRuleScheduler.matching_tasks(rule)
    recipients = NotificationRuleScheduler.resolve_recipients(rule)
    return jsonify({
        "rule": _rule_payload(rule),
        "tasks": [t.to_dict() for t in tasks],
        "recipients": [r.email for r in recipients],
    })


@notification_rule_bp.route("/<int:rule_id>/send-now", methods=["POST"])
def send_now(rule_id):
    sent = NotificationRuleScheduler.trigger_now(rule_id, actor_id_from_request(json_body()))
    return jsonify({"rule_id": rule_id, "sent": sent})
