"""
FieldOps Service Workflow
Scheduler Service — job registry and execution with run history.

There is no background thread: an external trigger (cron calling
``flask scheduler-tick`` or POST /api/v1/cron/tick) owns periodic
execution and calls ``SchedulerService.run_job`` / ``run_all``.

Architecture:
    - Job functions registered via ``@register_job(name)``
    - One ScheduledJob row per job for run history
    - Each run happens inside the Flask app context
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask

from fieldops.models import db
from fieldops.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("invoice_due_sweep")
        def sweep_invoice_due(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Job execution service.

    Jobs are executed within the Flask app context; failures are recorded
    on the ScheduledJob row and returned, never re-raised.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create the ScheduledJob row of every registered job that has none."""
        created = []
        for name, fn in _job_registry.items():
            if ScheduledJob.query.filter_by(job_name=name).first():
                continue
            job = ScheduledJob(
                job_name=name,
                description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                schedule_config=_get_default_schedule(name),
                is_enabled=True,
            )
            db.session.add(job)
            created.append(job)
        if created:
            db.session.commit()
            logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str, *, force: bool = False) -> dict:
        """
        Execute a single job by name.

        Disabled jobs are skipped unless ``force`` is set.

        Returns:
            Dict with job_name, status, duration_ms, result, error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        with cls._app.app_context():
            cls.ensure_jobs_registered()
            record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if record and not record.is_enabled and not force:
                logger.info("Job %s is disabled, skipping", job_name, extra={"job_name": job_name})
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

            start = time.monotonic()
            result = None
            error = None
            status = "success"
            try:
                result = fn(cls._app)
            except Exception as exc:
                # Any failure is recorded on the job row; the next tick retries
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})
            duration_ms = int((time.monotonic() - start) * 1000)

            record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if record:
                record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()

        logger.info("Job %s finished: %s (%dms)", job_name, status, duration_ms,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_all(cls) -> list[dict]:
        """One scheduler tick: every registered job, in registration order."""
        return [cls.run_job(name) for name in _job_registry]

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        db.session.commit()
        return job_record.to_dict()


def _get_default_schedule(job_name: str) -> dict:
    """Suggested cron cadence per job (informational; the trigger is external)."""
    defaults = {
        "invoice_due_sweep": {"hour": "*", "minute": "0", "description": "Hourly"},
        "renewal_stage2_sweep": {"hour": "*", "minute": "15", "description": "Hourly at :15"},
        "renewal_due_reminders": {"hour": "7", "minute": "0", "description": "Daily at 07:00"},
        "notification_rules_tick": {"minute": "*/5", "description": "Every scheduler tick (5 min)"},
    }
    return defaults.get(job_name, {"hour": "0", "minute": "0", "description": "Daily at midnight"})
