"""
Tests: Dependency Graph Resolver.

Covers:
  1. add_dependency rejects cycles (nothing persisted), self edges,
     duplicates and cross-assignment edges
  2. finish_to_start with lag: the dependent stays gated until
     completed_at + lag, then release_due_eligibility lets it go once
  3. start_to_start edges are satisfied when the prerequisite starts
  4. try_auto_start is a compare-and-swap: exactly one caller wins
  5. an edge onto an already completed task is born satisfied
  6. critical_path returns the longest finish_to_start chain
  7. tenant isolation: tasks of another organization are not found
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from practice_automation.core.exceptions import (
    ConflictError,
    CycleError,
    NotFoundError,
    ValidationError,
)
from practice_automation.models import db as _db
from practice_automation.models.dependency import TaskDependency
from practice_automation.services import dependency_service, workflow_service
from practice_automation.utils.helpers import as_utc

from conftest import NOW


# ── ORM helpers ───────────────────────────────────────────────────────────────


def _make_assignment(org_id, task_names=("Prepare", "Review", "File"), auto_start=()):
    wf = workflow_service.create_workflow(org_id, {
        "name": "Payroll Close",
        "stages": [{"name": "Close", "tasks": [
            {"name": n, "auto_start": n in auto_start} for n in task_names
        ]}],
    })
    assignment, _ = workflow_service.instantiate_workflow(org_id, wf.id)
    tasks = list(assignment.iter_tasks())
    return assignment, tasks


def _edge_count():
    return _db.session.execute(select(func.count(TaskDependency.id))).scalar()


# ── 1. Edge insertion ─────────────────────────────────────────────────────────


class TestAddDependency:
    def test_cycle_is_rejected_and_nothing_persisted(self, org):
        _, (a, b, c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id)
        dependency_service.add_dependency(org.id, c.id, b.id)

        with pytest.raises(CycleError):
            dependency_service.add_dependency(org.id, a.id, c.id)
        assert _edge_count() == 2

    def test_cycle_error_is_a_validation_error(self):
        assert issubclass(CycleError, ValidationError)

    def test_self_edge(self, org):
        _, (a, _b, _c) = _make_assignment(org.id)
        with pytest.raises(ValidationError):
            dependency_service.add_dependency(org.id, a.id, a.id)

    def test_duplicate_edge(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id)
        with pytest.raises(ConflictError):
            dependency_service.add_dependency(org.id, b.id, a.id, "start_to_start")

    def test_negative_lag(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        with pytest.raises(ValidationError, match="lag_days"):
            dependency_service.add_dependency(org.id, b.id, a.id, lag_days=-1)

    def test_tasks_must_share_an_assignment(self, org):
        _, (a, _b, _c) = _make_assignment(org.id)
        _, (x, _y, _z) = _make_assignment(org.id)
        with pytest.raises(ValidationError, match="same assignment"):
            dependency_service.add_dependency(org.id, x.id, a.id)

    def test_other_organization_task_not_found(self, org, other_org):
        _, (a, _b, _c) = _make_assignment(org.id)
        _, (x, _y, _z) = _make_assignment(other_org.id)
        with pytest.raises(NotFoundError):
            dependency_service.add_dependency(org.id, a.id, x.id)

    def test_edge_onto_completed_task_is_satisfied(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        workflow_service.set_node_status(a, "completed", NOW)
        dep = dependency_service.add_dependency(org.id, b.id, a.id, now=NOW)
        assert dep.is_satisfied is True
        assert as_utc(b.eligible_at) == NOW


# ── 2. Lag gating ─────────────────────────────────────────────────────────────


class TestLag:
    def test_dependent_waits_for_lag(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id, "finish_to_start", lag_days=2)

        released = dependency_service.on_task_completed(a, NOW)
        assert released == []
        assert as_utc(b.eligible_at) == NOW + timedelta(days=2)

        with pytest.raises(ValidationError, match="may not start before"):
            dependency_service.assert_can_start(b, NOW + timedelta(days=1))
        dependency_service.assert_can_start(b, NOW + timedelta(days=2))

    def test_release_due_eligibility_releases_once(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id, lag_days=2)
        workflow_service.set_node_status(a, "completed", NOW)

        assert dependency_service.release_due_eligibility(NOW + timedelta(days=1)) == []
        released = dependency_service.release_due_eligibility(NOW + timedelta(days=2))
        assert [t.id for t in released] == [b.id]
        assert dependency_service.release_due_eligibility(NOW + timedelta(days=3)) == []

    def test_unsatisfied_edge_blocks_start(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id)
        with pytest.raises(ValidationError, match="blocked by task"):
            workflow_service.set_node_status(b, "in_progress", NOW)

    def test_non_blocking_edge_never_gates(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id, is_blocking=False)
        workflow_service.set_node_status(b, "in_progress", NOW)
        assert b.status == "in_progress"

    def test_zero_lag_releases_immediately(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id)
        released = dependency_service.on_task_completed(a, NOW)
        assert [t.id for t in released] == [b.id]
        assert as_utc(b.eligibility_released_at) == NOW


# ── 3. Start-based edges ──────────────────────────────────────────────────────


class TestStartEdges:
    def test_start_to_start_released_on_start(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id, "start_to_start")

        changes = workflow_service.set_node_status(a, "in_progress", NOW)
        eligible = [ch for ch in changes if ch.kind == "task_eligible"]
        assert [ch.entity_id for ch in eligible] == [b.id]
        assert eligible[0].metadata["dependencyTypes"] == ["start_to_start"]

    def test_finish_to_finish_gates_completion(self, org):
        _, (a, b, _c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id, "finish_to_finish")
        workflow_service.set_node_status(b, "in_progress", NOW)
        with pytest.raises(ValidationError, match="cannot finish"):
            workflow_service.set_node_status(b, "completed", NOW)


# ── 4. Auto-start CAS ─────────────────────────────────────────────────────────


class TestAutoStart:
    def test_only_one_caller_wins(self, org):
        _, (_a, b, _c) = _make_assignment(org.id, auto_start=("Review",))
        assert dependency_service.try_auto_start(b, NOW) is True
        assert dependency_service.try_auto_start(b, NOW) is False
        assert b.status == "in_progress"

    def test_requires_auto_start_flag(self, org):
        _, (a, _b, _c) = _make_assignment(org.id)
        assert dependency_service.try_auto_start(a, NOW) is False
        assert a.status == "not_started"

    def test_workflow_service_reports_single_start(self, org):
        _, (_a, b, _c) = _make_assignment(org.id, auto_start=("Review",))
        first = workflow_service.auto_start_task(b, NOW)
        second = workflow_service.auto_start_task(b, NOW)
        assert any(ch.field_name == "status" and ch.new_value == "in_progress" for ch in first)
        assert second == []


# ── 5. Critical path ──────────────────────────────────────────────────────────


class TestCriticalPath:
    def test_longest_chain_with_lag(self, org):
        assignment, (a, b, c) = _make_assignment(org.id)
        dependency_service.add_dependency(org.id, b.id, a.id, lag_days=2)
        dependency_service.add_dependency(org.id, c.id, b.id)

        result = dependency_service.critical_path(org.id, assignment.id)
        assert result["task_ids"] == [a.id, b.id, c.id]
        assert result["length_days"] == 5

    def test_empty_assignment(self, org):
        assert dependency_service.critical_path(org.id, 999) == {
            "assignment_id": 999, "task_ids": [], "length_days": 0,
        }


# ── 6. Listing ────────────────────────────────────────────────────────────────


def test_list_dependencies_both_directions(org):
    _, (a, b, c) = _make_assignment(org.id)
    dependency_service.add_dependency(org.id, b.id, a.id)
    dependency_service.add_dependency(org.id, c.id, b.id)

    listing = dependency_service.list_dependencies(org.id, b.id)
    assert [d["depends_on_task_id"] for d in listing["prerequisites"]] == [a.id]
    assert [d["task_id"] for d in listing["dependents"]] == [c.id]


def test_template_edges_are_cloned_on_instantiation(org):
    wf = workflow_service.create_workflow(org.id, {
        "name": "Audit",
        "stages": [{"name": "Fieldwork", "tasks": [{"name": "Plan"}, {"name": "Test"}]}],
    })
    plan, test = wf.template_stages[0].steps[0].tasks
    dependency_service.add_dependency(org.id, test.id, plan.id, lag_days=1)

    assignment, _ = workflow_service.instantiate_workflow(org.id, wf.id)
    copy_plan, copy_test = assignment.iter_tasks()
    listing = dependency_service.list_dependencies(org.id, copy_test.id)
    assert listing["prerequisites"][0]["depends_on_task_id"] == copy_plan.id
    assert listing["prerequisites"][0]["lag_days"] == 1
