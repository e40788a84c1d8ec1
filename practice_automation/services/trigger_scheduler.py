"""
Trigger Scheduler — time-based trigger scans.

Each scan enumerates its candidates first (bounded, organization-filtered
queries) and only then hands the synthesised TriggerFireRequests to the
AutomationEngine, so a slow action never stalls the enumeration.

    scan                  cadence      dedupe
    ───────────────────── ──────────── ──────────────────────────────────
    due_date_approaching  daily        fired_on_day
    overdue               daily        last_fire + repeatEveryDays
    time_threshold        hourly       fired_since(updated_at)
    schedule              every minute next_run_at + CAS lock on locked_at
    relative_date         daily        fired_on_day
    fiscal_deadline       daily        fired_on_day
    budget_threshold      hourly       is_triggered CAS
    team_capacity         daily        fired_on_day
    dependency release    15 minutes   eligibility_released_at CAS

Every scan takes ``now`` so callers (and tests) own the clock. Calendar
days are UTC days.
"""

import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, or_, select, update

from practice_automation.core.exceptions import ScheduleScanError, ValidationError
from practice_automation.models import db
from practice_automation.models.auth import User
from practice_automation.models.automation import BudgetThreshold, TriggerConfig
from practice_automation.models.workflow import Assignment, WorkflowTask
from practice_automation.services import dependency_service, event_log, workflow_service
from practice_automation.services.automation_events import TriggerFireRequest
from practice_automation.services.trigger_specs import parse_trigger_config
from practice_automation.utils.helpers import as_utc, parse_datetime

logger = logging.getLogger(__name__)

_MODELS = {"assignment": Assignment, "task": WorkflowTask}


class TriggerScheduler:
    """Runs the periodic scans against one AutomationEngine."""

    def __init__(self, engine, *, batch_size=500, lock_minutes=5):
        self.engine = engine
        self.batch_size = batch_size
        self.lock_timeout = timedelta(minutes=lock_minutes)

    @classmethod
    def from_config(cls, engine, config):
        return cls(
            engine,
            batch_size=config.get("AUTOMATION_SCAN_BATCH_SIZE", 500),
            lock_minutes=config.get("AUTOMATION_SCHEDULE_LOCK_MINUTES", 5),
        )

    def _now(self, now):
        return as_utc(now) if now else self.engine.clock()

    # ── Tick ─────────────────────────────────────────────────────────────

    def scans(self):
        return {
            "due_date_approaching": self.scan_due_dates,
            "overdue": self.scan_overdue,
            "time_threshold": self.scan_time_thresholds,
            "schedule": self.scan_schedules,
            "relative_date": self.scan_relative_dates,
            "fiscal_deadline": self.scan_fiscal_deadlines,
            "budget_threshold": self.scan_budgets,
            "team_capacity": self.scan_team_capacity,
            "dependency_release": self.release_dependencies,
        }

    def run_scan(self, name, now=None):
        """Run one scan; a failure is logged as ScheduleScanError and returned."""
        scan = self.scans()[name]
        try:
            return scan(self._now(now)), None
        except Exception as exc:
            db.session.rollback()
            err = ScheduleScanError(name, exc)
            logger.exception("%s", err, extra={"trigger_type": name})
            return 0, err

    def run_all(self, now=None, only=None):
        """Run every scan once. Returns {"fired": {scan: n}, "errors": {scan: msg}}."""
        now = self._now(now)
        summary = {"fired": {}, "errors": {}}
        for name in self.scans():
            if only and name not in only:
                continue
            fired, err = self.run_scan(name, now)
            summary["fired"][name] = fired
            if err is not None:
                summary["errors"][name] = str(err)
        logger.info("Scheduler tick at %s: %s", now.isoformat(), summary)
        return summary

    # ── Helpers ──────────────────────────────────────────────────────────

    def _triggers(self, trigger_type):
        """Enabled triggers of one type with their parsed specs, invalid configs skipped."""
        triggers = db.session.execute(
            select(TriggerConfig)
            .where(TriggerConfig.trigger_type == trigger_type, TriggerConfig.is_enabled.is_(True))
            .order_by(TriggerConfig.organization_id, TriggerConfig.id)
        ).scalars().all()
        out = []
        for trigger in triggers:
            try:
                out.append((trigger, parse_trigger_config(trigger.trigger_type, trigger.config)))
            except ValidationError as exc:
                logger.warning("Skipping trigger %s with invalid config: %s", trigger.id, exc,
                               extra={"organization_id": trigger.organization_id,
                                      "trigger_type": trigger_type})
        return out

    def _scoped(self, stmt, model, trigger):
        """Restrict an entity query to the trigger's organization and workflow."""
        stmt = stmt.where(model.organization_id == trigger.organization_id)
        if model is WorkflowTask:
            stmt = stmt.where(WorkflowTask.assignment_id.isnot(None))
            if trigger.workflow_id:
                stmt = stmt.join(Assignment, Assignment.id == WorkflowTask.assignment_id).where(
                    Assignment.workflow_id == trigger.workflow_id
                )
        elif trigger.workflow_id:
            stmt = stmt.where(model.workflow_id == trigger.workflow_id)
        return stmt.order_by(model.id).limit(self.batch_size)

    def _request(self, trigger, entity_type, entity_id, now, field_name=None, new_value=None,
                 **metadata):
        metadata["triggerConfigId"] = trigger.id
        return TriggerFireRequest(
            type=trigger.trigger_type,
            entity_type=entity_type,
            entity_id=entity_id,
            organization_id=trigger.organization_id,
            field_name=field_name,
            new_value=new_value,
            metadata=metadata,
            scheduled_for=now,
        )

    def _dispatch(self, fire_requests, now):
        fired = 0
        for req in fire_requests:
            fired += len(self.engine.fire_trigger(req, now))
        return fired

    def _not_fired_today(self, trigger, entity_type, entity_id, today):
        return not event_log.fired_on_day(
            trigger.organization_id, trigger.id, entity_type, entity_id, today,
        )

    # ── Date scans ───────────────────────────────────────────────────────

    def scan_due_dates(self, now):
        today = now.date()
        pending = []
        for trigger, spec in self._triggers("due_date_approaching"):
            model = _MODELS[spec.applies_to]
            target = today + timedelta(days=spec.days_before_due)
            rows = db.session.execute(self._scoped(
                select(model).where(model.due_date == target, model.status != "completed"),
                model, trigger,
            )).scalars().all()
            for row in rows:
                if self._not_fired_today(trigger, spec.applies_to, row.id, today):
                    pending.append(self._request(
                        trigger, spec.applies_to, row.id, now,
                        field_name="due_date", new_value=row.due_date.isoformat(),
                        daysUntilDue=spec.days_before_due, dueDate=row.due_date.isoformat(),
                    ))
        return self._dispatch(pending, now)

    def scan_overdue(self, now):
        today = now.date()
        pending = []
        for trigger, spec in self._triggers("overdue"):
            model = _MODELS[spec.applies_to]
            latest_due = today - timedelta(days=max(1, spec.grace_period_days))
            rows = db.session.execute(self._scoped(
                select(model).where(model.due_date.isnot(None), model.due_date <= latest_due,
                                    model.status != "completed"),
                model, trigger,
            )).scalars().all()
            for row in rows:
                last = event_log.last_fire(trigger.organization_id, trigger.id,
                                           spec.applies_to, row.id)
                if last is not None:
                    if spec.repeat_every_days is None:
                        continue
                    if (today - last.date()).days < spec.repeat_every_days:
                        continue
                pending.append(self._request(
                    trigger, spec.applies_to, row.id, now,
                    field_name="due_date", new_value=row.due_date.isoformat(),
                    daysOverdue=(today - row.due_date).days, dueDate=row.due_date.isoformat(),
                ))
        return self._dispatch(pending, now)

    def scan_relative_dates(self, now):
        today = now.date()
        pending = []
        for trigger, spec in self._triggers("relative_date"):
            model = _MODELS[spec.applies_to]
            column = getattr(model, spec.anchor_field, None)
            if column is None:
                continue
            anchor = today - timedelta(days=spec.offset_days)
            if spec.anchor_field == "created_at":
                start = datetime.combine(anchor, time.min, tzinfo=timezone.utc)
                window = (column >= start, column < start + timedelta(days=1))
            else:
                window = (column == anchor,)
            rows = db.session.execute(self._scoped(
                select(model).where(*window, model.status != "completed"), model, trigger,
            )).scalars().all()
            for row in rows:
                if self._not_fired_today(trigger, spec.applies_to, row.id, today):
                    pending.append(self._request(
                        trigger, spec.applies_to, row.id, now,
                        anchorField=spec.anchor_field, offsetDays=spec.offset_days,
                        anchorDate=anchor.isoformat(),
                    ))
        return self._dispatch(pending, now)

    @staticmethod
    def next_deadline(month, day, today):
        """Next occurrence of an annual month/day deadline on or after ``today``."""
        def _on(year):
            return date(year, month, min(day, calendar.monthrange(year, month)[1]))

        deadline = _on(today.year)
        return deadline if deadline >= today else _on(today.year + 1)

    def scan_fiscal_deadlines(self, now):
        today = now.date()
        pending = []
        for trigger, spec in self._triggers("fiscal_deadline"):
            deadline = self.next_deadline(spec.month, spec.day, today)
            days_until = (deadline - today).days
            if days_until != spec.days_before:
                continue
            rows = db.session.execute(self._scoped(
                select(Assignment).where(Assignment.status != "completed"), Assignment, trigger,
            )).scalars().all()
            for row in rows:
                if self._not_fired_today(trigger, "assignment", row.id, today):
                    pending.append(self._request(
                        trigger, "assignment", row.id, now,
                        deadlineType=spec.deadline_type, daysUntilDeadline=days_until,
                        deadlineDate=deadline.isoformat(),
                    ))
        return self._dispatch(pending, now)

    # ── Inactivity ───────────────────────────────────────────────────────

    def scan_time_thresholds(self, now):
        pending = []
        for trigger, spec in self._triggers("time_threshold"):
            model = _MODELS[spec.applies_to]
            cutoff = now - timedelta(hours=spec.inactivity_hours)
            rows = db.session.execute(self._scoped(
                select(model).where(model.updated_at < cutoff,
                                    model.status.in_(spec.watch_statuses)),
                model, trigger,
            )).scalars().all()
            for row in rows:
                updated_at = as_utc(row.updated_at)
                if event_log.fired_since(trigger.organization_id, trigger.id,
                                         spec.applies_to, row.id, updated_at):
                    continue
                pending.append(self._request(
                    trigger, spec.applies_to, row.id, now,
                    field_name="updated_at", new_value=updated_at.isoformat(),
                    inactiveHours=round((now - updated_at).total_seconds() / 3600, 2),
                    status=row.status,
                ))
        return self._dispatch(pending, now)

    # ── Cron / one-time schedules ────────────────────────────────────────

    def _first_run(self, spec, now):
        if spec.schedule_type == "one_time":
            return parse_datetime(spec.run_at)
        fire = spec.cron_trigger().get_next_fire_time(None, now)
        return fire.astimezone(timezone.utc) if fire else None

    @staticmethod
    def _run_after(spec, fired_slot, now):
        """Next cron slot strictly after the one just fired; missed slots are not replayed."""
        start = max(now, fired_slot + timedelta(microseconds=1))
        fire = spec.cron_trigger().get_next_fire_time(None, start)
        return fire.astimezone(timezone.utc) if fire else None

    def _acquire(self, trigger, now):
        """Claim a due schedule; a stale lock older than the timeout may be taken over."""
        result = db.session.execute(
            update(TriggerConfig)
            .where(
                TriggerConfig.id == trigger.id,
                TriggerConfig.is_enabled.is_(True),
                or_(TriggerConfig.locked_at.is_(None),
                    TriggerConfig.locked_at < now - self.lock_timeout),
            )
            .values(locked_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    def scan_schedules(self, now):
        due = []
        for trigger, spec in self._triggers("schedule"):
            if trigger.next_run_at is None:
                trigger.next_run_at = self._first_run(spec, now)
                if trigger.next_run_at is None:
                    logger.warning("Schedule %s has no future run, disabling", trigger.id,
                                   extra={"organization_id": trigger.organization_id})
                    trigger.is_enabled = False
                db.session.commit()
            if trigger.next_run_at is not None and as_utc(trigger.next_run_at) <= now:
                due.append((trigger.id, spec))

        fired = 0
        for trigger_id, spec in due:
            trigger = db.session.get(TriggerConfig, trigger_id)
            if not self._acquire(trigger, now):
                logger.info("Schedule %s is locked by another worker", trigger_id)
                continue
            scheduled_for = as_utc(trigger.next_run_at)
            entity_type, entity_id = (("workflow", trigger.workflow_id) if trigger.workflow_id
                                      else ("organization", trigger.organization_id))
            req = self._request(trigger, entity_type, entity_id, now,
                                scheduledFor=scheduled_for.isoformat())
            req.scheduled_for = scheduled_for
            try:
                fired += len(self.engine.fire_trigger(req, now))
            finally:
                trigger = db.session.get(TriggerConfig, trigger_id)
                trigger.last_run_at = now
                trigger.run_count = (trigger.run_count or 0) + 1
                trigger.locked_at = None
                if spec.schedule_type == "one_time":
                    trigger.is_enabled = False
                    trigger.next_run_at = None
                else:
                    trigger.next_run_at = self._run_after(spec, scheduled_for, now)
                db.session.commit()
        return fired

    # ── Budget / capacity ────────────────────────────────────────────────

    def scan_budgets(self, now):
        """Reconcile thresholds whose spend crossed without a recorded fire."""
        thresholds = db.session.execute(
            select(BudgetThreshold)
            .where(BudgetThreshold.is_triggered.is_(False),
                   BudgetThreshold.current_spend * 100
                   >= BudgetThreshold.budget_amount * BudgetThreshold.threshold_percentage)
            .order_by(BudgetThreshold.id)
            .limit(self.batch_size)
        ).scalars().all()
        changes = []
        for threshold in thresholds:
            changes.extend(workflow_service.check_budget_threshold(threshold, now))
        return len(self.engine.dispatch_changes(changes, now))

    def scan_team_capacity(self, now):
        today = now.date()
        pending = []
        for trigger, spec in self._triggers("team_capacity"):
            open_tasks = (
                select(WorkflowTask.assigned_to_id, func.count(WorkflowTask.id).label("open_count"))
                .where(WorkflowTask.organization_id == trigger.organization_id,
                       WorkflowTask.assignment_id.isnot(None),
                       WorkflowTask.status != "completed")
                .group_by(WorkflowTask.assigned_to_id)
                .subquery()
            )
            stmt = (
                select(User, open_tasks.c.open_count)
                .join(open_tasks, open_tasks.c.assigned_to_id == User.id)
                .where(User.organization_id == trigger.organization_id,
                       User.is_active.is_(True), User.max_open_tasks > 0)
                .order_by(User.id)
                .limit(self.batch_size)
            )
            if spec.user_id is not None:
                stmt = stmt.where(User.id == spec.user_id)
            for user, open_count in db.session.execute(stmt).all():
                utilization = round(open_count * 100.0 / user.max_open_tasks, 1)
                if utilization < spec.capacity_percentage:
                    continue
                if self._not_fired_today(trigger, "user", user.id, today):
                    pending.append(self._request(
                        trigger, "user", user.id, now,
                        utilization=utilization, openTasks=open_count,
                        capacity=user.max_open_tasks,
                    ))
        return self._dispatch(pending, now)

    # ── Dependency lag ───────────────────────────────────────────────────

    def release_dependencies(self, now):
        """Release tasks whose finish/start lag has elapsed and fire task_dependency."""
        released = dependency_service.release_due_eligibility(now, limit=self.batch_size)
        if released:
            logger.info("Released %d tasks whose dependency lag elapsed", len(released))
        changes = workflow_service.eligible_changes(released)
        return len(self.engine.dispatch_changes(changes, now))
