"""
Decision Engine
Background job runner.

Nothing in here keeps time. Cron, a platform scheduler or an operator
calling ``POST /api/v1/scheduler/jobs/<name>/trigger`` decides *when*;
this module decides *what* runs and remembers how it went.

Jobs are plain functions taking the Flask app, collected with the
``register_job`` decorator. Each gets a ScheduledJob row the first time the
scheduler looks at it, and that row carries the enable switch and the last
run's outcome.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from flask import Flask

from decision_engine.models import db
from decision_engine.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

JobFn = Callable[[Flask], Any]

_JOBS: dict[str, JobFn] = {}


def register_job(name: str):
    """Add the decorated function to the job registry under ``name``."""
    def wrap(fn: JobFn) -> JobFn:
        _JOBS[name] = fn
        return fn
    return wrap


def get_registered_jobs() -> dict[str, JobFn]:
    return dict(_JOBS)


def _default_schedule(job_name: str, app: Flask) -> dict:
    if job_name == "decision_transitions":
        every = app.config.get("TRANSITION_JOB_INTERVAL_MINUTES", 15)
        return {"minutes": every, "description": f"Every {every} minutes"}
    return {"hour": "0", "minute": "0", "description": "Daily at midnight"}


def _summary_line(fn: JobFn, job_name: str) -> str:
    doc = (fn.__doc__ or "").strip()
    return doc.splitlines()[0] if doc else f"Scheduled job: {job_name}"


def _find(job_name: str) -> ScheduledJob | None:
    return ScheduledJob.query.filter_by(job_name=job_name).first()


def _outcome(job_name, status, *, duration_ms=0, result=None, error=None) -> dict:
    return {
        "job_name": job_name,
        "status": status,
        "duration_ms": duration_ms,
        "result": result,
        "error": error,
    }


class SchedulerService:
    """Runs registered jobs inside the app context and records each run."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("Scheduler ready, %d job(s) registered", len(_JOBS))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create the ScheduledJob row of every registered job that lacks one.

        Returns only the rows created by this call.
        """
        app = cls._app
        if app is None:
            return []

        with app.app_context():
            missing = [name for name in _JOBS if _find(name) is None]
            created = [
                ScheduledJob(
                    job_name=name,
                    description=_summary_line(_JOBS[name], name),
                    schedule_type="interval",
                    schedule_config=_default_schedule(name, app),
                    status="active",
                    is_enabled=True,
                )
                for name in missing
            ]
            if created:
                db.session.add_all(created)
                db.session.commit()
                logger.info("Registered %d new job record(s): %s",
                            len(created), ", ".join(missing))
        return created

    @classmethod
    def run_job(cls, job_name: str, *, force: bool = False) -> dict:
        """Run ``job_name`` now and store the outcome on its record.

        A disabled job is reported as ``skipped`` unless ``force`` is set,
        which is how the manual trigger endpoint runs paused jobs. A job that
        raises is reported as ``failed``; the exception never propagates.
        """
        fn = _JOBS.get(job_name)
        if fn is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        app = cls._app
        if app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        cls.ensure_jobs_registered()
        if not force and cls._is_disabled(job_name):
            logger.info("Skipping disabled job %s", job_name, extra={"job_name": job_name})
            return _outcome(job_name, "skipped")

        started = time.monotonic()
        status, result, error = cls._execute(app, job_name, fn)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        cls._store_run(app, job_name, status, elapsed_ms, result, error)
        logger.info("Job %s finished with status=%s", job_name, status,
                    extra={"job_name": job_name, "duration_ms": elapsed_ms})
        return _outcome(job_name, status, duration_ms=elapsed_ms, result=result, error=error)

    @classmethod
    def _is_disabled(cls, job_name: str) -> bool:
        with cls._app.app_context():
            record = _find(job_name)
            return record is not None and not record.is_enabled

    @staticmethod
    def _execute(app: Flask, job_name: str, fn: JobFn):
        try:
            with app.app_context():
                return "success", fn(app), None
        except Exception as exc:
            logger.exception("Job %s raised: %s", job_name, exc, extra={"job_name": job_name})
            return "failed", None, str(exc)

    @staticmethod
    def _store_run(app, job_name, status, duration_ms, result, error) -> None:
        stored = result if isinstance(result, dict) else {"output": str(result)}
        try:
            with app.app_context():
                record = _find(job_name)
                if record is None:
                    return
                record.record_run(status=status, duration_ms=duration_ms,
                                  result=stored, error=error)
                db.session.commit()
        except Exception:
            logger.exception("Could not store run of %s", job_name, extra={"job_name": job_name})

    @classmethod
    def list_jobs(cls) -> list[dict]:
        listing = []
        for name in _JOBS:
            record = _find(name)
            listing.append({
                "job_name": name,
                "registered": True,
                "db_record": record.to_dict() if record else None,
            })
        return listing

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        record = _find(job_name)
        return record.to_dict() if record else None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or pause a job. Returns None when no record exists."""
        if job_name in _JOBS:
            cls.ensure_jobs_registered()
        record = _find(job_name)
        if record is None:
            return None
        record.set_enabled(enabled)
        db.session.commit()
        return record.to_dict()
