"""
FieldOps Service Workflow
Flask Application Factory.

Usage:
    from fieldops import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from fieldops.config import config
from fieldops.middleware.logging_config import configure_logging
from fieldops.middleware.rate_limiter import init_rate_limits
from fieldops.middleware.timing import init_request_timing
from fieldops.models import db
from fieldops.services.clock import init_clock

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None, *, clock=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        clock: Optional Clock override (tests pass a FrozenClock).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so environment checks in the config __init__ run
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)
    init_clock(app, clock)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic and create_all can see them ─────────
    from fieldops.models import client as _client_models            # noqa: F401
    from fieldops.models import intervention as _intervention_models  # noqa: F401
    from fieldops.models import operator as _operator_models        # noqa: F401
    from fieldops.models import renewal as _renewal_models          # noqa: F401
    from fieldops.models import scheduling as _scheduling_models    # noqa: F401

    # ── Auto-create tables in dev/test (production runs `flask db upgrade`) ──
    if config_name != "production":
        with app.app_context():
            db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
            if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
                os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from fieldops.blueprints import register_error_handlers
    from fieldops.blueprints.alert_bp import alert_bp
    from fieldops.blueprints.cron_bp import cron_bp
    from fieldops.blueprints.health_bp import health_bp
    from fieldops.blueprints.intervention_bp import intervention_bp
    from fieldops.blueprints.notification_rule_bp import notification_rule_bp
    from fieldops.blueprints.renewal_bp import renewal_bp

    app.register_blueprint(intervention_bp)
    app.register_blueprint(renewal_bp)
    app.register_blueprint(alert_bp)
    app.register_blueprint(notification_rule_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(health_bp)

    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("fieldops.services.scheduled_jobs")  # registers @register_job handlers
    from fieldops.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-job")
    @click.argument("job_name")
    @click.option("--force", is_flag=True, help="Run even if the job is disabled.")
    def run_job_cmd(job_name, force):
        """Run one registered scheduled job now."""
        result = SchedulerService.run_job(job_name, force=force)
        click.echo(f"{result['job_name']}: {result['status']} ({result.get('duration_ms', 0)}ms)")
        if result.get("error"):
            click.echo(result["error"], err=True)
            raise SystemExit(1)

    @app.cli.command("scheduler-tick")
    def scheduler_tick_cmd():
        """Run every registered job once (call from cron every SCHEDULER_TICK_MINUTES)."""
        failed = 0
        for result in SchedulerService.run_all():
            click.echo(f"{result['job_name']}: {result['status']} ({result.get('duration_ms', 0)}ms)")
            failed += result["status"] == "failed"
        if failed:
            raise SystemExit(1)

    return app
