"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade                    # apply migrations/versions
    flask db migrate -m "description"
    flask run-job invoice_due_sweep     # one scheduled job
    flask scheduler-tick                # every registered job (cron)
"""

from fieldops import create_app

app = create_app()
