"""fieldops_baseline

Create the workflow tables: clients, installations, installation tasks,
contracts, operators, interventions, renewal items, alert log,
notification rules and scheduled jobs.

Revision ID: 0f1e2d3c4b5a
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "0f1e2d3c4b5a"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "clients" not in existing_tables:
        op.create_table(
            "clients",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "installations" not in existing_tables:
        op.create_table(
            "installations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("planned_date", sa.Date(), nullable=True),
            sa.Column("hard_date", sa.Date(), nullable=True),
            sa.Column("proforma", sa.String(length=100), nullable=True),
            sa.Column("warehouse_code", sa.String(length=50), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_installations_client_id", "installations", ["client_id"])

    if "installation_tasks" not in existing_tables:
        op.create_table(
            "installation_tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("installation_id", sa.Integer(), nullable=False),
            sa.Column("task_key", sa.String(length=100), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("target", sa.String(length=50), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["installation_id"], ["installations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_installation_tasks_installation_id", "installation_tasks", ["installation_id"])
        op.create_index("ix_installation_tasks_task_key", "installation_tasks", ["task_key"])

    if "contracts" not in existing_tables:
        op.create_table(
            "contracts",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("plan_code", sa.String(length=50), nullable=False),
            sa.Column("expires_on", sa.Date(), nullable=True),
            sa.Column("included_quota", sa.Integer(), nullable=True),
            sa.Column("unlimited", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_contracts_client_id", "contracts", ["client_id"])

    if "operators" not in existing_tables:
        op.create_table(
            "operators",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("alerts_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("all_status_changes", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("alert_topics", sa.JSON(), nullable=True),
            sa.Column("client_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_operators_email", "operators", ["email"])

    if "interventions" not in existing_tables:
        op.create_table(
            "interventions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("contract_id", sa.Integer(), nullable=False),
            sa.Column("installation_id", sa.Integer(), nullable=False),
            sa.Column("performed_on", sa.Date(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("included", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("proforma", sa.String(length=100), nullable=True),
            sa.Column("warehouse_code", sa.String(length=50), nullable=True),
            sa.Column("state", sa.String(length=10), nullable=False, server_default="OPEN"),
            sa.Column("outcome", sa.String(length=30), nullable=True),
            sa.Column("invoice_number", sa.String(length=100), nullable=True),
            sa.Column("invoiced_on", sa.Date(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("technical_notes", sa.Text(), nullable=True),
            sa.Column("closed_by_operator_id", sa.Integer(), nullable=True),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["installation_id"], ["installations.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["closed_by_operator_id"], ["operators.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_interventions_contract_id", "interventions", ["contract_id"])
        op.create_index("ix_interventions_installation_id", "interventions", ["installation_id"])
        op.create_index("ix_interventions_contract_included", "interventions", ["contract_id", "included"])
        op.create_index("ix_interventions_invoice_due", "interventions",
                        ["state", "outcome", "invoice_number"])

    if "renewal_items" not in existing_tables:
        op.create_table(
            "renewal_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("installation_id", sa.Integer(), nullable=True),
            sa.Column("item_type", sa.String(length=30), nullable=False),
            sa.Column("reference", sa.String(length=200), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("stage", sa.String(length=20), nullable=False, server_default="TO_NOTIFY"),
            sa.Column("stage1_notified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("stage1_recipient", sa.String(length=255), nullable=True),
            sa.Column("confirmed_by_operator_id", sa.Integer(), nullable=True),
            sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("invoice_requested_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("stage2_notified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("stage2_recipient", sa.String(length=255), nullable=True),
            sa.Column("invoice_number", sa.String(length=100), nullable=True),
            sa.Column("invoiced_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("not_renewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["installation_id"], ["installations.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["confirmed_by_operator_id"], ["operators.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_renewal_items_client_id", "renewal_items", ["client_id"])
        op.create_index("ix_renewal_items_installation_id", "renewal_items", ["installation_id"])
        op.create_index("ix_renewal_items_client_stage", "renewal_items", ["client_id", "stage"])

    if "alert_log_entries" not in existing_tables:
        op.create_table(
            "alert_log_entries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("channel", sa.String(length=40), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False, server_default=""),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("related_ids", sa.JSON(), nullable=True),
            sa.Column("client_id", sa.Integer(), nullable=True),
            sa.Column("recipient_operator_id", sa.Integer(), nullable=True),
            sa.Column("recipient_email", sa.String(length=255), nullable=True),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("sender_operator_id", sa.Integer(), nullable=True),
            sa.Column("sender_label", sa.String(length=150), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False, server_default=""),
            sa.Column("body", sa.Text(), nullable=False),
            sa.Column("email_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("dedup_day", sa.Date(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["recipient_operator_id"], ["operators.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["sender_operator_id"], ["operators.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "channel", "entity_type", "entity_id", "dedup_day", "recipient_email",
                name="uq_alert_log_dedup",
            ),
        )
        op.create_index("ix_alert_log_entity", "alert_log_entries", ["entity_type", "entity_id"])
        op.create_index("ix_alert_log_channel_created", "alert_log_entries", ["channel", "created_at"])

    if "notification_rules" not in existing_tables:
        op.create_table(
            "notification_rules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_key", sa.String(length=100), nullable=False),
            sa.Column("task_title", sa.String(length=300), nullable=False, server_default=""),
            sa.Column("target", sa.String(length=50), nullable=False, server_default="GENERAL"),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("mode", sa.String(length=20), nullable=False, server_default="MANUAL"),
            sa.Column("recipients", sa.JSON(), nullable=True),
            sa.Column("frequency", sa.String(length=20), nullable=False, server_default="DAILY"),
            sa.Column("send_time", sa.Time(), nullable=False),
            sa.Column("timezone", sa.String(length=64), nullable=False, server_default="Europe/Rome"),
            sa.Column("day_of_week", sa.Integer(), nullable=True),
            sa.Column("stop_statuses", sa.JSON(), nullable=True),
            sa.Column("only_future", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("last_sent_on", sa.Date(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("task_key", "target", name="uq_notification_rule_topic"),
        )

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    for table in (
        "scheduled_jobs",
        "notification_rules",
        "alert_log_entries",
        "renewal_items",
        "interventions",
        "operators",
        "contracts",
        "installation_tasks",
        "installations",
        "clients",
    ):
        if table in existing_tables:
            op.drop_table(table)
