"""alert_log_trigger: due-date reminder threshold on the alert log

Revision ID: 7c2d9e41b0aa
Revises: 0f1e2d3c4b5a
Create Date: 2026-10-26 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2d9e41b0aa'
down_revision = '0f1e2d3c4b5a'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('alert_log_entries', schema=None) as batch_op:
        batch_op.add_column(sa.Column('reminder_trigger', sa.String(length=20), nullable=True,
            comment='Reminder threshold, e.g. auto_30; one alert per entity and trigger'))
        batch_op.create_unique_constraint(
            'uq_alert_log_trigger', ['channel', 'entity_type', 'entity_id', 'reminder_trigger']
        )


def downgrade():
    with op.batch_alter_table('alert_log_entries', schema=None) as batch_op:
        batch_op.drop_constraint('uq_alert_log_trigger', type_='unique')
        batch_op.drop_column('reminder_trigger')
