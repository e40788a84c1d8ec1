"""
Practice Automation Engine
Scheduled Jobs.

Each job runs a group of TriggerScheduler scans at the group's cadence:

    - daily_date_scans:      due_date_approaching, overdue, relative_date,
                             fiscal_deadline, team_capacity
    - hourly_activity_scans: time_threshold, budget_threshold
    - schedule_triggers:     cron / one-time schedule triggers
    - dependency_release:    tasks whose dependency lag has elapsed

Importing this module registers the jobs; the app factory does so before
SchedulerService.init_app().
"""

from __future__ import annotations

import logging
from typing import Any

from practice_automation.services.scheduler_service import register_job
from practice_automation.services.trigger_scheduler import TriggerScheduler

logger = logging.getLogger(__name__)

JOB_SCANS = {
    "daily_date_scans": ("due_date_approaching", "overdue", "relative_date",
                         "fiscal_deadline", "team_capacity"),
    "hourly_activity_scans": ("time_threshold", "budget_threshold"),
    "schedule_triggers": ("schedule",),
    "dependency_release": ("dependency_release",),
}


def _run_scans(app, job_name) -> dict[str, Any]:
    engine = app.extensions["automation_engine"]
    scheduler = TriggerScheduler.from_config(engine, app.config)
    summary = scheduler.run_all(only=JOB_SCANS[job_name])
    logger.info("%s: %s", job_name, summary, extra={"job_name": job_name})
    return summary


@register_job("daily_date_scans")
def run_daily_date_scans(app) -> dict[str, Any]:
    """Due-date, overdue, relative-date, fiscal-deadline and capacity scans."""
    return _run_scans(app, "daily_date_scans")


@register_job("hourly_activity_scans")
def run_hourly_activity_scans(app) -> dict[str, Any]:
    """Inactivity and budget reconciliation scans."""
    return _run_scans(app, "hourly_activity_scans")


@register_job("schedule_triggers")
def run_schedule_triggers(app) -> dict[str, Any]:
    """Fire cron and one-time schedule triggers that are due."""
    return _run_scans(app, "schedule_triggers")


@register_job("dependency_release")
def run_dependency_release(app) -> dict[str, Any]:
    """Release tasks whose finish/start lag has elapsed."""
    return _run_scans(app, "dependency_release")
