"""
Tests: Entity Store (workflow_service).

Covers:
  1. instantiate_workflow clones the template tree with assignee and due date
  2. task completion rolls up: step → stage → next stage → assignment,
     under row locks and against freshly read sibling statuses
  3. lifecycle guards: invalid transitions, template tasks, reopen
  4. update_field whitelist, coercion and no-op on unchanged values
  5. tag writes on clients and assignments
  6. client contacts and budget threshold crossings
  7. add_months clamps to the end of the month
"""

from datetime import date

import pytest
from sqlalchemy import event, update
from sqlalchemy.dialects import postgresql

from practice_automation.core.exceptions import NotFoundError, ValidationError
from practice_automation.models import db as _db
from practice_automation.models.auth import User
from practice_automation.models.workflow import Assignment, WorkflowStage, WorkflowStep, WorkflowTask
from practice_automation.services import workflow_service

from conftest import NOW


def _instantiate(org, wf, **kw):
    assignment, changes = workflow_service.instantiate_workflow(org.id, wf.id, **kw)
    return assignment, changes


def _kinds(changes):
    return [(ch.kind, ch.entity_type) for ch in changes if ch.kind != "field"]


# ── 1. Instantiation ─────────────────────────────────────────────────────────


class TestInstantiate:
    def test_clones_template_tree(self, org, tax_workflow, tax_client, preparer):
        assignment, changes = _instantiate(
            org, tax_workflow, client_id=tax_client.id,
            assigned_to_id=preparer.id, due_date="2026-04-15",
        )
        assert assignment.name == "1040 Tax Return: Jordan Lee"
        assert [s.name for s in assignment.stages] == ["Collection", "Review"]
        assert [s.source_id for s in assignment.stages] == [s.id for s in tax_workflow.template_stages]

        tasks = list(assignment.iter_tasks())
        assert [t.name for t in tasks] == ["Collect W-2", "Collect 1099", "Partner review"]
        assert all(t.assigned_to_id == preparer.id for t in tasks)
        assert all(t.due_date == date(2026, 4, 15) for t in tasks)
        assert all(t.status == "not_started" for t in tasks)

        assert len(changes) == 1
        assert changes[0].kind == "assignment_created"
        assert changes[0].metadata == {"templateId": tax_workflow.id, "clientId": tax_client.id}

    def test_template_is_not_touched(self, org, tax_workflow):
        _instantiate(org, tax_workflow)
        template_tasks = list(tax_workflow.template_stages[0].iter_tasks())
        assert all(t.assignment_id is None for t in template_tasks)

    def test_invalid_priority(self, org, tax_workflow):
        with pytest.raises(ValidationError, match="priority"):
            _instantiate(org, tax_workflow, priority="critical")

    def test_client_of_other_org(self, org, other_org, tax_workflow):
        from practice_automation.models.client import Client

        foreign = Client(organization_id=other_org.id, name="Elsewhere LLC", tags=[])
        _db.session.add(foreign)
        _db.session.flush()
        with pytest.raises(NotFoundError):
            _instantiate(org, tax_workflow, client_id=foreign.id)

    def test_workflow_of_other_org(self, other_org, tax_workflow):
        with pytest.raises(NotFoundError):
            workflow_service.instantiate_workflow(other_org.id, tax_workflow.id)

    def test_create_workflow_requires_name(self, org):
        with pytest.raises(ValidationError):
            workflow_service.create_workflow(org.id, {"name": "  "})


# ── 2. Roll-ups ──────────────────────────────────────────────────────────────


class TestRollups:
    def test_stage_completion_starts_next_stage(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        w2, f1099, review = assignment.iter_tasks()
        collection, review_stage = assignment.stages

        workflow_service.set_node_status(w2, "completed", NOW)
        assert collection.status == "in_progress"
        assert assignment.status == "in_progress"
        assert assignment.progress == 25.0

        changes = workflow_service.set_node_status(f1099, "completed", NOW)
        assert ("all_tasks_complete", "step") in _kinds(changes)
        assert ("all_tasks_complete", "stage") in _kinds(changes)
        assert collection.status == "completed"
        assert review_stage.status == "in_progress"
        assert assignment.status == "in_progress"

        changes = workflow_service.set_node_status(review, "completed", NOW)
        assert ("all_tasks_complete", "assignment") in _kinds(changes)
        assert review_stage.status == "completed"
        assert assignment.status == "completed"
        assert assignment.progress == 100.0

    def test_roll_up_sees_sibling_completed_by_another_request(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        w2, f1099, _review = assignment.iter_tasks()
        collection = assignment.stages[0]
        _db.session.execute(
            update(WorkflowTask).where(WorkflowTask.id == f1099.id)
            .values(status="completed", started_at=NOW, completed_at=NOW)
            .execution_options(synchronize_session=False)
        )
        assert f1099.status == "not_started"

        changes = workflow_service.set_node_status(w2, "completed", NOW)

        assert ("all_tasks_complete", "stage") in _kinds(changes)
        assert collection.status == "completed"

    def test_roll_up_locks_parents_in_order(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        w2 = next(assignment.iter_tasks())
        locked = []

        def _capture(state):
            if not state.is_select or state.is_relationship_load:
                return
            if "FOR UPDATE" not in str(state.statement.compile(dialect=postgresql.dialect())):
                return
            entity = state.statement.column_descriptions[0]["entity"]
            if entity in (Assignment, WorkflowStage, WorkflowStep):
                locked.append(entity)

        session = _db.session()
        event.listen(session, "do_orm_execute", _capture)
        try:
            workflow_service.set_node_status(w2, "completed", NOW)
        finally:
            event.remove(session, "do_orm_execute", _capture)

        assert locked == [Assignment, WorkflowStage, WorkflowStep]

    def test_status_changes_are_reported_per_node(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        w2 = next(assignment.iter_tasks())
        changes = workflow_service.set_node_status(w2, "in_progress", NOW)
        status_changes = {(ch.entity_type, ch.new_value) for ch in changes if ch.field_name == "status"}
        assert status_changes == {
            ("task", "in_progress"), ("step", "in_progress"),
            ("stage", "in_progress"), ("assignment", "in_progress"),
        }

    def test_stage_without_auto_progress_waits(self, org):
        wf = workflow_service.create_workflow(org.id, {
            "name": "Bookkeeping",
            "stages": [{"name": "Month end", "tasks": [{"name": "Reconcile"}]},
                       {"name": "Report", "tasks": [{"name": "Send P&L"}]}],
        })
        assignment, _ = _instantiate(org, wf)
        reconcile = next(assignment.iter_tasks())
        changes = workflow_service.set_node_status(reconcile, "completed", NOW)
        assert ("all_tasks_complete", "stage") in _kinds(changes)
        assert assignment.stages[0].status == "in_progress"
        assert assignment.stages[1].status == "not_started"

    def test_advance_stage(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        workflow_service.advance_stage(assignment, NOW)
        assert [s.status for s in assignment.stages] == ["completed", "in_progress"]
        workflow_service.advance_stage(assignment, NOW)
        assert assignment.status == "completed"
        with pytest.raises(ValidationError, match="no stage left"):
            workflow_service.advance_stage(assignment, NOW)


# ── 3. Lifecycle guards ──────────────────────────────────────────────────────


class TestLifecycle:
    def test_invalid_transition(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        w2 = next(assignment.iter_tasks())
        workflow_service.set_node_status(w2, "completed", NOW)
        with pytest.raises(ValidationError, match="Invalid transition"):
            workflow_service.set_node_status(w2, "not_started", NOW)

    def test_unknown_status(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        with pytest.raises(ValidationError, match="Invalid status"):
            workflow_service.set_node_status(assignment, "archived", NOW)

    def test_template_task_has_no_lifecycle(self, tax_workflow):
        template_task = next(tax_workflow.template_stages[0].iter_tasks())
        with pytest.raises(ValidationError, match="Template tasks"):
            workflow_service.set_node_status(template_task, "in_progress", NOW)

    def test_same_status_is_noop(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        assert workflow_service.set_node_status(assignment, "not_started", NOW) == []

    def test_reopen_clears_completed_at(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        w2 = next(assignment.iter_tasks())
        workflow_service.set_node_status(w2, "completed", NOW)
        workflow_service.set_node_status(w2, "in_progress", NOW)
        assert w2.completed_at is None
        assert w2.status == "in_progress"


# ── 4. Field writes ──────────────────────────────────────────────────────────


class TestUpdateField:
    def test_priority_change_reported(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        changes = workflow_service.update_field(org.id, "assignment", assignment.id,
                                                "priority", "urgent", NOW)
        assert len(changes) == 1
        assert (changes[0].field_name, changes[0].old_value, changes[0].new_value) == (
            "priority", "normal", "urgent")

    def test_unchanged_value_is_noop(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        assert workflow_service.update_field(org.id, "assignment", assignment.id,
                                              "priority", "normal", NOW) == []

    def test_field_not_whitelisted(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        with pytest.raises(ValidationError, match="not writable"):
            workflow_service.update_field(org.id, "assignment", assignment.id,
                                          "client_id", 3, NOW)

    def test_invalid_priority(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        with pytest.raises(ValidationError, match="Invalid priority"):
            workflow_service.update_field(org.id, "assignment", assignment.id,
                                          "priority", "critical", NOW)

    def test_due_date_is_coerced(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        changes = workflow_service.update_field(org.id, "assignment", assignment.id,
                                                "due_date", "2026-04-15", NOW)
        assert assignment.due_date == date(2026, 4, 15)
        assert changes[0].new_value == "2026-04-15"

    def test_bad_date(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        with pytest.raises(ValidationError, match="Invalid date"):
            workflow_service.update_field(org.id, "assignment", assignment.id,
                                          "due_date", "someday", NOW)

    def test_assignee_must_belong_to_org(self, org, other_org, tax_workflow):
        outsider = User(organization_id=other_org.id, email="sam@elsewhere.test")
        _db.session.add(outsider)
        _db.session.flush()
        assignment, _ = _instantiate(org, tax_workflow)
        with pytest.raises(NotFoundError):
            workflow_service.update_field(org.id, "assignment", assignment.id,
                                          "assigned_to_id", outsider.id, NOW)

    def test_status_goes_through_lifecycle(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        changes = workflow_service.update_field(org.id, "assignment", assignment.id,
                                                "status", "in_progress", NOW)
        assert assignment.status == "in_progress"
        assert changes[0].field_name == "status"

    def test_unknown_entity_type(self, org):
        with pytest.raises(ValidationError, match="Unknown entity type"):
            workflow_service.update_field(org.id, "invoice", 1, "name", "x", NOW)


# ── 5. Tags ──────────────────────────────────────────────────────────────────


class TestTags:
    def test_apply_is_idempotent(self, org, tax_client):
        first = workflow_service.apply_tags(org.id, "client", tax_client.id, ["vip", "1040"], NOW)
        assert tax_client.tags == ["vip", "1040"]
        assert first[0].old_value == [] and first[0].new_value == ["vip", "1040"]
        assert workflow_service.apply_tags(org.id, "client", tax_client.id, ["vip"], NOW) == []

    def test_remove_and_clear(self, org, tax_client):
        workflow_service.apply_tags(org.id, "client", tax_client.id, ["vip", "1040", "late"], NOW)
        workflow_service.remove_tags(org.id, "client", tax_client.id, ["late"], now=NOW)
        assert tax_client.tags == ["vip", "1040"]
        workflow_service.remove_tags(org.id, "client", tax_client.id, clear_all=True, now=NOW)
        assert tax_client.tags == []

    def test_tasks_have_no_tags(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        task = next(assignment.iter_tasks())
        with pytest.raises(ValidationError, match="Tags live on"):
            workflow_service.apply_tags(org.id, "task", task.id, ["x"], NOW)


# ── 6. Contacts & budgets ────────────────────────────────────────────────────


class TestContacts:
    def test_contact_added_change(self, org, tax_client):
        contact, changes = workflow_service.add_client_contact(
            org.id, tax_client.id, name="Casey Lee", email="casey@example.test", role="tax",
        )
        assert contact.client_id == tax_client.id
        assert changes[0].kind == "contact_added"
        assert changes[0].metadata["contactRole"] == "tax"

    def test_invalid_role(self, org, tax_client):
        with pytest.raises(ValidationError, match="Invalid role"):
            workflow_service.add_client_contact(org.id, tax_client.id, name="X", role="auditor")

    def test_name_required(self, org, tax_client):
        with pytest.raises(ValidationError):
            workflow_service.add_client_contact(org.id, tax_client.id, name=" ")


class TestBudget:
    def test_crossing_reported_once(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        bt = workflow_service.create_budget_threshold(
            org.id, assignment.id, budget_amount=1000, threshold_percentage=80,
        )
        assert workflow_service.record_spend(org.id, bt.id, 500, NOW) == []

        crossed = workflow_service.record_spend(org.id, bt.id, 350, NOW)
        assert len(crossed) == 1
        assert crossed[0].kind == "budget_crossed"
        assert crossed[0].entity_id == assignment.id
        assert crossed[0].metadata["spendPercentage"] == 85.0
        assert bt.is_triggered is True

        assert workflow_service.record_spend(org.id, bt.id, 100, NOW) == []

    def test_revision_rearms(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        bt = workflow_service.create_budget_threshold(
            org.id, assignment.id, budget_amount=1000, threshold_percentage=80,
        )
        workflow_service.record_spend(org.id, bt.id, 900, NOW)
        assert workflow_service.revise_budget(org.id, bt.id, budget_amount=2000, now=NOW) == []
        assert bt.is_triggered is False
        assert len(workflow_service.record_spend(org.id, bt.id, 800, NOW)) == 1

    def test_budget_must_be_positive(self, org, tax_workflow):
        assignment, _ = _instantiate(org, tax_workflow)
        with pytest.raises(ValidationError):
            workflow_service.create_budget_threshold(org.id, assignment.id, budget_amount=0)


# ── 7. Date helpers ──────────────────────────────────────────────────────────


@pytest.mark.parametrize("start,months,expected", [
    (date(2026, 1, 31), 1, date(2026, 2, 28)),
    (date(2025, 11, 15), 3, date(2026, 2, 15)),
    (date(2024, 3, 31), -1, date(2024, 2, 29)),
])
def test_add_months(start, months, expected):
    assert workflow_service.add_months(start, months) == expected
