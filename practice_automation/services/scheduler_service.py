"""
Practice Automation Engine
Scheduler Service — periodic job runner.

Jobs are plain functions registered with @register_job and executed inside
the Flask app context. Each registered job has a ScheduledJob row holding
its cron fields and run history. A single background thread (started only
when AUTOMATION_SCHEDULER_ENABLED is set) wakes every
AUTOMATION_SCHEDULER_TICK_SECONDS and runs whichever jobs are due by their
APScheduler CronTrigger. Tests and the /scheduler/run endpoint call
run_job()/tick() directly instead.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from apscheduler.triggers.cron import CronTrigger
from flask import Flask
from sqlalchemy import select

from practice_automation.models import db
from practice_automation.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ── Job registry ─────────────────────────────────────────────────────────────

_job_registry: dict[str, Callable] = {}

# Cron fields accepted by CronTrigger; anything else in schedule_config is ignored.
_CRON_FIELDS = ("year", "month", "day", "week", "day_of_week", "hour", "minute", "second")


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("dependency_release")
        def release_dependencies(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def cron_for(schedule_config: dict | None) -> CronTrigger:
    fields = {k: v for k, v in (schedule_config or {}).items() if k in _CRON_FIELDS}
    return CronTrigger(timezone="UTC", **fields)


class SchedulerService:
    """Job persistence, manual execution and the background tick loop."""

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None
    _next_runs: dict[str, datetime] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        cls._next_runs = {}
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))
        if app.config.get("AUTOMATION_SCHEDULER_ENABLED"):
            cls.start()

    @classmethod
    def _job_record(cls, job_name: str) -> ScheduledJob | None:
        return db.session.execute(
            select(ScheduledJob).where(ScheduledJob.job_name == job_name)
        ).scalar_one_or_none()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that has none."""
        if not cls._app:
            return []
        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                if cls._job_record(name) is None:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip(),
                        schedule_type="cron",
                        schedule_config=_get_default_schedule(name),
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
        """Execute a single job by name and persist the outcome on its ScheduledJob row."""
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"
        log_extra = {"job_name": job_name}

        try:
            with cls._app.app_context():
                result = fn(cls._app)
                if isinstance(result, dict) and result.get("errors"):
                    status = "partial"
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed", job_name, extra=log_extra)

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                job_record = cls._job_record(job_name)
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name, extra=log_extra)

        logger.info("Job %s finished: %s in %dms", job_name, status, duration_ms, extra=log_extra)
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name in _job_registry:
            job_record = cls._job_record(name)
            jobs.append({
                "job_name": name,
                "registered": True,
                "next_run_at": cls._next_runs[name].isoformat() if name in cls._next_runs else None,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        job_record = cls._job_record(job_name)
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()

    # ── Background loop ──────────────────────────────────────────────────

    @classmethod
    def due_jobs(cls, now: datetime) -> list[str]:
        """Names of enabled jobs whose cron fire time has arrived; advances their next run."""
        due = []
        with cls._app.app_context():
            records = db.session.execute(
                select(ScheduledJob).where(ScheduledJob.is_enabled.is_(True))
            ).scalars().all()
            for record in records:
                if record.job_name not in _job_registry:
                    continue
                cron = cron_for(record.schedule_config)
                next_run = cls._next_runs.get(record.job_name)
                if next_run is None:
                    cls._next_runs[record.job_name] = cron.get_next_fire_time(None, now)
                    continue
                if next_run <= now:
                    due.append(record.job_name)
                    cls._next_runs[record.job_name] = cron.get_next_fire_time(None, now)
        return due

    @classmethod
    def tick(cls, now: datetime | None = None) -> list[dict]:
        now = now or datetime.now(timezone.utc)
        return [cls.run_job(name) for name in cls.due_jobs(now)]

    @classmethod
    def _loop(cls, interval: int) -> None:
        while not cls._stop.is_set():
            try:
                cls.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            cls._stop.wait(interval)

    @classmethod
    def start(cls) -> None:
        if cls._thread and cls._thread.is_alive():
            return
        cls.ensure_jobs_registered()
        interval = cls._app.config.get("AUTOMATION_SCHEDULER_TICK_SECONDS", 60)
        cls._stop = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop, args=(interval,), name="automation-scheduler", daemon=True,
        )
        cls._thread.start()
        logger.info("Scheduler thread started (tick every %ss)", interval)

    @classmethod
    def stop(cls) -> None:
        if cls._stop is not None:
            cls._stop.set()
        if cls._thread is not None:
            cls._thread.join(timeout=5)
        cls._thread = None


def _get_default_schedule(job_name: str) -> dict:
    """Default cron fields for the built-in jobs."""
    defaults = {
        "daily_date_scans": {"hour": "6", "minute": "0", "description": "Daily at 06:00 UTC"},
        "hourly_activity_scans": {"minute": "5", "description": "Hourly at :05"},
        "schedule_triggers": {"minute": "*", "description": "Every minute"},
        "dependency_release": {"minute": "*/15", "description": "Every 15 minutes"},
    }
    return defaults.get(job_name, {"hour": "0", "minute": "0", "description": "Daily at midnight"})
