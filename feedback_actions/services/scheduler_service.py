"""
Feedback Action Engine
Scheduler Service: single tick runner per deployment.

Jobs register through ``@register_job(name)``; each has a persisted
ScheduledJob row holding its interval and run history. The tick runner polls
due jobs (``run_pending``) from a single process, either the
``flask scheduler run`` CLI loop or the admin trigger endpoint. Web workers
never run jobs themselves.

Architecture:
    - register_job: decorator filling the in-process registry
    - SchedulerService.ensure_jobs_registered: create missing DB rows
    - SchedulerService.run_job: execute one job and record the outcome
    - SchedulerService.run_pending / run_forever: poll and execute due jobs
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from typing import Callable

from flask import Flask, has_app_context

from feedback_actions.models import db
from feedback_actions.models.scheduling import ScheduledJob
from feedback_actions.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("action_escalation_check")
        def run_escalation_check(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


def default_schedule(app: Flask, job_name: str) -> dict:
    """Default interval config for known jobs, read from app config."""
    cfg = app.config
    defaults = {
        "action_escalation_check": {
            "interval_minutes": cfg.get("ESCALATION_TICK_INTERVAL_MINUTES", 15),
            "description": "Evaluate escalation rules",
        },
        "action_trend_calculation": {
            "interval_minutes": cfg.get("TREND_INTERVAL_MINUTES", 1440),
            "description": "Classify action trends",
        },
        "action_overdue_scanner": {"interval_minutes": 1440, "description": "Daily overdue notices"},
        "notification_cleanup": {"interval_minutes": 1440, "description": "Daily notification cleanup"},
    }
    return defaults.get(job_name, {"interval_minutes": 1440, "description": "Daily"})


class SchedulerService:
    """
    Lightweight scheduler service.

    Jobs are executed within the Flask app context; the caller's context is
    reused when one is already active.
    """

    _app: Flask | None = None
    _running: bool = False

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def _context(cls):
        if has_app_context():
            return nullcontext()
        return cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a DB record for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._context():
            for name, fn in _job_registry.items():
                if ScheduledJob.query.filter_by(job_name=name).first():
                    continue
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                    schedule_type="interval",
                    schedule_config=default_schedule(cls._app, name),
                    status="active",
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with job_name, status, duration_ms, result and error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._context():
            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

            duration_ms = int((time.monotonic() - start) * 1000)

            try:
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
            except Exception:
                db.session.rollback()
                logger.exception("Failed to update job record for %s", job_name, extra={"job_name": job_name})

        logger.info(
            "Job %s finished: %s in %dms", job_name, status, duration_ms,
            extra={"job_name": job_name, "duration_ms": duration_ms},
        )
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def due_jobs(cls, now=None) -> list[str]:
        now = now or utcnow()
        with cls._context():
            records = ScheduledJob.query.order_by(ScheduledJob.id).all()
            return [r.job_name for r in records if r.job_name in _job_registry and r.is_due(now)]

    @classmethod
    def run_pending(cls, now=None) -> list[dict]:
        """Run every enabled job whose interval has elapsed. One tick."""
        cls.ensure_jobs_registered()
        return [cls.run_job(name) for name in cls.due_jobs(now)]

    @classmethod
    def run_forever(cls, poll_seconds: int | None = None) -> None:
        """Blocking tick loop for the dedicated scheduler process."""
        poll = poll_seconds or cls._app.config.get("SCHEDULER_POLL_SECONDS", 60)
        cls._running = True
        logger.info("Scheduler loop started (poll every %ss)", poll)
        try:
            while cls._running:
                cls.run_pending()
                time.sleep(poll)
        except KeyboardInterrupt:
            logger.info("Scheduler loop interrupted")
        finally:
            cls._running = False

    @classmethod
    def stop(cls) -> None:
        cls._running = False

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
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
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()
