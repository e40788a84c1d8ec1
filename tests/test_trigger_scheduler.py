"""
Tests: Trigger Scheduler scans.

Covers:
  1. due_date_approaching fires once per entity per UTC day
  2. overdue honours gracePeriodDays and repeats only every repeatEveryDays
  3. time_threshold fires once per period of inactivity and re-arms on update
  4. schedule: cron next_run_at bookkeeping and one_time auto-disable
  5. relative_date and fiscal_deadline (next_deadline incl. Feb 29 clamp)
  6. budget reconciliation, team capacity, dependency lag release
  7. run_scan / run_all isolate a failing scan
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from practice_automation.models import db as _db
from practice_automation.models.automation import TriggerEvent
from practice_automation.services import dependency_service, workflow_service
from practice_automation.services.trigger_scheduler import TriggerScheduler
from practice_automation.utils.helpers import as_utc

from conftest import NOW

pytestmark = pytest.mark.integration

DAY = timedelta(days=1)


def _notify(title="Heads up", **cfg):
    return {"type": "send_notification", "config": {"title": title, **cfg}}


@pytest.fixture()
def scheduler(engine):
    return TriggerScheduler(engine)


def _assignment(engine, org, wf, **kw):
    assignment, _ = engine.instantiate_workflow(org.id, wf.id, **kw)
    return assignment


# ── 1. Due dates ─────────────────────────────────────────────────────────────


class TestDueDates:
    def test_fires_once_per_day(self, engine, scheduler, make_trigger, org, tax_workflow):
        make_trigger(org.id, "due_date_approaching", config={"daysBeforeDue": 3}, actions=[_notify()])
        assignment = _assignment(engine, org, tax_workflow, due_date="2026-03-05")

        assert scheduler.scan_due_dates(NOW) == 1
        assert scheduler.scan_due_dates(NOW + timedelta(hours=3)) == 0
        assert scheduler.scan_due_dates(NOW + DAY) == 0

        evt = TriggerEvent.query.one()
        assert evt.entity_id == assignment.id
        assert evt.event_metadata["daysUntilDue"] == 3
        assert as_utc(evt.scheduled_for) == NOW

    def test_completed_work_is_ignored(self, engine, scheduler, make_trigger, org, tax_workflow):
        make_trigger(org.id, "due_date_approaching", config={"daysBeforeDue": 3})
        assignment = _assignment(engine, org, tax_workflow, due_date="2026-03-05")
        assignment.status = "completed"
        _db.session.flush()
        assert scheduler.scan_due_dates(NOW) == 0

    def test_workflow_scoped_trigger(self, engine, scheduler, make_trigger, org, tax_workflow):
        other = workflow_service.create_workflow(org.id, {"name": "Payroll"})
        make_trigger(org.id, "due_date_approaching", workflow_id=other.id, config={"daysBeforeDue": 3})
        _assignment(engine, org, tax_workflow, due_date="2026-03-05")
        assert scheduler.scan_due_dates(NOW) == 0

    def test_task_level(self, engine, scheduler, make_trigger, org, tax_workflow):
        make_trigger(org.id, "due_date_approaching",
                     config={"daysBeforeDue": 0, "appliesTo": "task"})
        _assignment(engine, org, tax_workflow, due_date="2026-03-02")
        assert scheduler.scan_due_dates(NOW) == 3


# ── 2. Overdue ───────────────────────────────────────────────────────────────


class TestOverdue:
    def test_repeat_interval(self, engine, scheduler, make_trigger, org, tax_workflow):
        make_trigger(org.id, "overdue", config={"repeatEveryDays": 2}, actions=[_notify()])
        _assignment(engine, org, tax_workflow, due_date="2026-02-27")

        assert scheduler.scan_overdue(NOW) == 1
        assert scheduler.scan_overdue(NOW) == 0
        assert scheduler.scan_overdue(NOW + DAY) == 0
        assert scheduler.scan_overdue(NOW + 2 * DAY) == 1

        overdue_days = sorted(e.event_metadata["daysOverdue"] for e in TriggerEvent.query.all())
        assert overdue_days == [3, 5]

    def test_no_repeat_fires_once(self, engine, scheduler, make_trigger, org, tax_workflow):
        make_trigger(org.id, "overdue", config={"gracePeriodDays": 1})
        _assignment(engine, org, tax_workflow, due_date="2026-03-01")

        assert scheduler.scan_overdue(NOW) == 1
        assert scheduler.scan_overdue(NOW + DAY) == 0
        assert scheduler.scan_overdue(NOW + 10 * DAY) == 0

    def test_grace_period(self, engine, scheduler, make_trigger, org, tax_workflow):
        make_trigger(org.id, "overdue", config={"gracePeriodDays": 2})
        _assignment(engine, org, tax_workflow, due_date="2026-03-01")
        assert scheduler.scan_overdue(NOW) == 0
        assert scheduler.scan_overdue(NOW + DAY) == 1


# ── 3. Inactivity ────────────────────────────────────────────────────────────


class TestTimeThreshold:
    def test_fires_once_then_rearms_on_update(self, engine, scheduler, make_trigger, org):
        wf = workflow_service.create_workflow(org.id, {
            "name": "Bookkeeping", "stages": [{"name": "Close", "tasks": [{"name": "Reconcile bank"}]}],
        })
        make_trigger(org.id, "time_threshold", config={"inactivityHours": 48}, actions=[_notify()])
        assignment = _assignment(engine, org, wf)
        task = next(assignment.iter_tasks())
        engine.transition_task(org.id, task.id, "in_progress", NOW - timedelta(hours=50))

        assert scheduler.scan_time_thresholds(NOW) == 1
        evt = TriggerEvent.query.one()
        assert evt.event_metadata["inactiveHours"] == 50.0
        assert evt.event_metadata["status"] == "in_progress"

        assert scheduler.scan_time_thresholds(NOW + timedelta(hours=1)) == 0

        engine.update_field(org.id, "task", task.id, "name", "Reconcile bank (Feb)",
                            NOW + timedelta(hours=1))
        assert scheduler.scan_time_thresholds(NOW + timedelta(hours=40)) == 0
        assert scheduler.scan_time_thresholds(NOW + timedelta(hours=50)) == 1

    def test_unwatched_status(self, engine, scheduler, make_trigger, org):
        wf = workflow_service.create_workflow(org.id, {
            "name": "Bookkeeping", "stages": [{"name": "Close", "tasks": [{"name": "Reconcile bank"}]}],
        })
        make_trigger(org.id, "time_threshold", config={"inactivityHours": 48})
        assignment = _assignment(engine, org, wf)
        task = next(assignment.iter_tasks())
        engine.transition_task(org.id, task.id, "blocked", NOW - timedelta(hours=50))
        assert scheduler.scan_time_thresholds(NOW) == 0


# ── 4. Schedules ─────────────────────────────────────────────────────────────


class TestSchedules:
    def test_cron_bookkeeping(self, scheduler, make_trigger, org):
        trigger = make_trigger(org.id, "schedule", config={"cron": "0 9 * * *"}, actions=[_notify()])

        assert scheduler.scan_schedules(NOW - timedelta(hours=1)) == 0
        assert as_utc(trigger.next_run_at) == NOW

        assert scheduler.scan_schedules(NOW + timedelta(seconds=30)) == 1
        assert trigger.run_count == 1
        assert trigger.locked_at is None
        assert as_utc(trigger.next_run_at) == datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)

        assert scheduler.scan_schedules(NOW + timedelta(minutes=1)) == 0

        evt = TriggerEvent.query.one()
        assert evt.entity_type == "organization"
        assert as_utc(evt.scheduled_for) == NOW

    def test_scan_on_the_cron_instant_fires_once(self, scheduler, make_trigger, org):
        trigger = make_trigger(org.id, "schedule", config={"cron": "0 9 * * *"}, actions=[_notify()])
        scheduler.scan_schedules(NOW - timedelta(hours=1))

        assert scheduler.scan_schedules(NOW) == 1
        assert as_utc(trigger.next_run_at) == NOW + DAY
        assert scheduler.scan_schedules(NOW + timedelta(minutes=1)) == 0
        assert TriggerEvent.query.count() == 1

    def test_late_scan_skips_missed_slots(self, scheduler, make_trigger, org):
        trigger = make_trigger(org.id, "schedule", config={"cron": "0 9 * * *"}, actions=[_notify()])
        scheduler.scan_schedules(NOW - timedelta(hours=1))

        late = NOW + 2 * DAY + timedelta(hours=1)
        assert scheduler.scan_schedules(late) == 1
        assert as_utc(trigger.next_run_at) == NOW + 3 * DAY
        assert scheduler.scan_schedules(late + timedelta(minutes=1)) == 0

    def test_one_time_disables_itself(self, scheduler, make_trigger, org):
        trigger = make_trigger(org.id, "schedule", actions=[_notify()],
                               config={"scheduleType": "one_time", "runAt": "2026-03-02T08:30:00Z"})

        assert scheduler.scan_schedules(NOW) == 1
        assert trigger.is_enabled is False
        assert trigger.next_run_at is None
        assert scheduler.scan_schedules(NOW + DAY) == 0

    def test_fresh_lock_blocks_second_worker(self, scheduler, make_trigger, org):
        trigger = make_trigger(org.id, "schedule", config={"cron": "0 9 * * *"})
        trigger.next_run_at = NOW
        trigger.locked_at = NOW - timedelta(minutes=1)
        _db.session.commit()

        assert scheduler.scan_schedules(NOW) == 0

    def test_stale_lock_is_taken_over(self, scheduler, make_trigger, org):
        trigger = make_trigger(org.id, "schedule", config={"cron": "0 9 * * *"})
        trigger.next_run_at = NOW
        trigger.locked_at = NOW - timedelta(minutes=30)
        _db.session.commit()

        assert scheduler.scan_schedules(NOW) == 1
        assert trigger.locked_at is None


# ── 5. Relative and fiscal dates ─────────────────────────────────────────────


class TestRelativeAndFiscal:
    def test_relative_date_before_due(self, engine, scheduler, make_trigger, org, tax_workflow):
        make_trigger(org.id, "relative_date", config={"anchorField": "due_date", "offsetDays": -7})
        _assignment(engine, org, tax_workflow, due_date="2026-03-09")

        assert scheduler.scan_relative_dates(NOW) == 1
        assert scheduler.scan_relative_dates(NOW) == 0
        assert scheduler.scan_relative_dates(NOW + DAY) == 0

    @pytest.mark.parametrize("month,day,today,expected", [
        (4, 15, date(2026, 3, 2), date(2026, 4, 15)),
        (4, 15, date(2026, 4, 15), date(2026, 4, 15)),
        (4, 15, date(2026, 4, 16), date(2027, 4, 15)),
        (2, 29, date(2026, 1, 1), date(2026, 2, 28)),
        (2, 29, date(2027, 3, 1), date(2028, 2, 29)),
    ])
    def test_next_deadline(self, month, day, today, expected):
        assert TriggerScheduler.next_deadline(month, day, today) == expected

    def test_fiscal_scan(self, engine, scheduler, make_trigger, org, tax_workflow):
        make_trigger(org.id, "fiscal_deadline", config={
            "month": 4, "day": 15, "deadlineType": "individual_return", "daysBefore": 44,
        }, actions=[_notify()])
        make_trigger(org.id, "fiscal_deadline", config={
            "month": 4, "day": 15, "deadlineType": "individual_return", "daysBefore": 30,
        })
        _assignment(engine, org, tax_workflow)

        assert scheduler.scan_fiscal_deadlines(NOW) == 1
        assert scheduler.scan_fiscal_deadlines(NOW) == 0
        evt = TriggerEvent.query.one()
        assert evt.event_metadata["deadlineDate"] == "2026-04-15"


# ── 6. Budgets, capacity, dependencies ───────────────────────────────────────


class TestReconciliation:
    def test_budget_crossed_without_fire(self, engine, scheduler, make_trigger, org, tax_workflow):
        make_trigger(org.id, "budget_threshold", actions=[_notify()])
        assignment = _assignment(engine, org, tax_workflow)
        bt = workflow_service.create_budget_threshold(
            org.id, assignment.id, budget_amount=1000, threshold_percentage=90,
        )
        bt.current_spend = 950.0
        _db.session.commit()

        assert scheduler.scan_budgets(NOW) == 1
        assert bt.is_triggered is True
        assert scheduler.scan_budgets(NOW) == 0

    def test_team_capacity(self, engine, scheduler, make_trigger, org, preparer, tax_workflow):
        preparer.max_open_tasks = 2
        make_trigger(org.id, "team_capacity", config={"capacityPercentage": 100},
                     actions=[_notify()])
        _assignment(engine, org, tax_workflow, assigned_to_id=preparer.id)

        assert scheduler.scan_team_capacity(NOW) == 1
        assert scheduler.scan_team_capacity(NOW + timedelta(hours=2)) == 0
        evt = TriggerEvent.query.one()
        assert evt.entity_id == preparer.id
        assert evt.event_metadata["utilization"] == 150.0

    def test_dependency_lag_release(self, engine, scheduler, make_trigger, org):
        wf = workflow_service.create_workflow(org.id, {
            "name": "Payroll",
            "stages": [{"name": "Run", "tasks": [{"name": "Import hours"},
                                                 {"name": "Approve", "auto_start": True}]}],
        })
        make_trigger(org.id, "task_dependency", actions=[_notify()])
        assignment = _assignment(engine, org, wf)
        first, second = assignment.iter_tasks()
        dependency_service.add_dependency(org.id, second.id, first.id, lag_days=2)

        _, events = engine.transition_task(org.id, first.id, "completed", NOW)
        assert events == []
        assert second.status == "not_started"

        assert scheduler.release_dependencies(NOW + DAY) == 0
        assert scheduler.release_dependencies(NOW + 2 * DAY) == 1
        assert second.status == "in_progress"
        assert scheduler.release_dependencies(NOW + 3 * DAY) == 0


# ── 7. Tick ──────────────────────────────────────────────────────────────────


class TestTick:
    def test_run_all_summary(self, scheduler):
        summary = scheduler.run_all(NOW)
        assert set(summary["fired"]) == set(scheduler.scans())
        assert all(n == 0 for n in summary["fired"].values())
        assert summary["errors"] == {}

    def test_failing_scan_is_isolated(self, scheduler, monkeypatch):
        def _boom(now):
            raise RuntimeError("database went away")

        monkeypatch.setattr(scheduler, "scan_overdue", _boom)
        fired, err = scheduler.run_scan("overdue", NOW)
        assert fired == 0
        assert "Scheduler scan 'overdue' failed" in str(err)

        summary = scheduler.run_all(NOW, only={"overdue", "due_date_approaching"})
        assert set(summary["fired"]) == {"overdue", "due_date_approaching"}
        assert "database went away" in summary["errors"]["overdue"]
