"""
Entity Store — Service Layer.

Business logic for:
    - Template authoring:    create_workflow (nested stages/steps/tasks)
    - Instantiation:         instantiate_workflow deep-copies the template
                             tree and its dependency edges into an Assignment
    - Lifecycle transitions: set_node_status for task/step/stage/assignment,
                             with start roll-up, auto-progress roll-up on
                             completion and reopen propagation
    - Field writes:          update_field (per-entity whitelist), tags,
                             assign_user
    - Clients:               add_client_contact
    - Budgets:               record_spend / revise_budget with an atomic
                             threshold-crossing flip

Every mutation returns the list of EntityChange it produced; the
AutomationEngine turns those into trigger fires. Functions here flush but
never commit: the caller owns the transaction (the engine commits the
primary mutation before dispatching, and action handlers run inside the
dispatcher's savepoints).
"""

import calendar
import logging
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select, update

from practice_automation.core.exceptions import NotFoundError, ValidationError
from practice_automation.models import db
from practice_automation.models.auth import Organization, User
from practice_automation.models.automation import BudgetThreshold
from practice_automation.models.client import CONTACT_ROLES, Client, ClientContact
from practice_automation.models.dependency import TaskDependency
from practice_automation.models.workflow import (
    ASSIGNMENT_PRIORITIES,
    NODE_STATUSES,
    Assignment,
    Workflow,
    WorkflowStage,
    WorkflowStep,
    WorkflowTask,
    validate_node_transition,
)
from practice_automation.services import dependency_service
from practice_automation.services.automation_events import EntityChange
from practice_automation.utils.helpers import as_utc, parse_date

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    "task": WorkflowTask,
    "step": WorkflowStep,
    "stage": WorkflowStage,
    "assignment": Assignment,
    "workflow": Workflow,
    "client": Client,
    "user": User,
}

NODE_TYPES = {
    WorkflowTask: "task",
    WorkflowStep: "step",
    WorkflowStage: "stage",
    Assignment: "assignment",
}

# Writable through update_field / the update_field action
FIELD_WHITELIST = {
    "task": {"name", "description", "priority", "due_date", "assigned_to_id", "auto_start"},
    "step": {"name", "description", "auto_progress"},
    "stage": {"name", "description", "auto_progress"},
    "assignment": {"name", "priority", "due_date", "start_date", "assigned_to_id"},
    "client": {"name", "email", "client_type", "owner_id"},
}

_DATE_FIELDS = {"due_date", "start_date"}
_BOOL_FIELDS = {"auto_progress", "auto_start"}
_USER_FIELDS = {"assigned_to_id", "owner_id"}


def _now(now):
    return as_utc(now) if now else datetime.now(timezone.utc)


def _plain(value):
    """Values as they travel on trigger requests."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, list):
        return list(value)
    return value


def _field_change(node, field_name, old, new, entity_type=None):
    return EntityChange(
        kind="field",
        entity_type=entity_type or NODE_TYPES.get(type(node), "client"),
        entity_id=node.id,
        organization_id=node.organization_id,
        field_name=field_name,
        old_value=_plain(old),
        new_value=_plain(new),
    )


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_entity(organization_id, entity_type, entity_id):
    """Scoped fetch of any automation entity, NotFoundError otherwise."""
    if entity_type == "organization":
        org = db.session.get(Organization, organization_id)
        if org is None or entity_id not in (None, organization_id):
            raise NotFoundError(resource="Organization", resource_id=entity_id)
        return org
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        raise ValidationError(f"Unknown entity type '{entity_type}'",
                              details={"entity_type": sorted(ENTITY_MODELS)})
    obj = model.get_scoped(organization_id, entity_id)
    if obj is None:
        raise NotFoundError(resource=model.__name__, resource_id=entity_id,
                            organization_id=organization_id)
    return obj


def get_workflow(organization_id, workflow_id):
    return get_entity(organization_id, "workflow", workflow_id)


def get_assignment(organization_id, assignment_id):
    return get_entity(organization_id, "assignment", assignment_id)


def _get_user(organization_id, user_id):
    user = User.get_scoped(organization_id, user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id, organization_id=organization_id)
    return user


# ── Template authoring ───────────────────────────────────────────────────────


def create_workflow(organization_id, data):
    """
    Create a workflow template from a nested payload::

        {"name": "Tax Return", "stages": [
            {"name": "Collection", "auto_progress": true, "steps": [
                {"name": "Gather", "tasks": [{"name": "W-2"}, {"name": "1099"}]}]}]}

    A stage given ``tasks`` without ``steps`` gets one implicit step named
    after the stage.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    wf = Workflow(
        organization_id=organization_id,
        name=name,
        description=data.get("description", ""),
        category=data.get("category", "general"),
    )
    db.session.add(wf)
    db.session.flush()

    for s_pos, s_data in enumerate(data.get("stages") or []):
        stage = WorkflowStage(
            organization_id=organization_id,
            workflow_id=wf.id,
            position=s_data.get("position", s_pos),
            name=s_data.get("name") or f"Stage {s_pos + 1}",
            description=s_data.get("description", ""),
            auto_progress=bool(s_data.get("auto_progress", False)),
        )
        db.session.add(stage)
        steps = s_data.get("steps")
        if steps is None and s_data.get("tasks"):
            steps = [{"name": stage.name, "tasks": s_data["tasks"],
                      "auto_progress": stage.auto_progress}]
        for st_pos, st_data in enumerate(steps or []):
            step = WorkflowStep(
                organization_id=organization_id,
                position=st_data.get("position", st_pos),
                name=st_data.get("name") or f"Step {st_pos + 1}",
                description=st_data.get("description", ""),
                auto_progress=bool(st_data.get("auto_progress", False)),
            )
            stage.steps.append(step)
            for t_pos, t_data in enumerate(st_data.get("tasks") or []):
                priority = t_data.get("priority", "normal")
                if priority not in ASSIGNMENT_PRIORITIES:
                    raise ValidationError(f"Invalid priority: {priority}")
                step.tasks.append(WorkflowTask(
                    organization_id=organization_id,
                    position=t_data.get("position", t_pos),
                    name=t_data.get("name") or f"Task {t_pos + 1}",
                    description=t_data.get("description", ""),
                    priority=priority,
                    auto_start=bool(t_data.get("auto_start", False)),
                ))
    db.session.flush()
    logger.info("Workflow %s created: %s", wf.id, wf.name,
                extra={"organization_id": organization_id})
    return wf


# ── Instantiation ────────────────────────────────────────────────────────────


def instantiate_workflow(organization_id, workflow_id, *, client_id=None, name=None,
                         due_date=None, start_date=None, priority="normal",
                         assigned_to_id=None):
    """
    Clone the template tree into a new Assignment.

    Each clone keeps source_id → template node; template dependency edges
    are re-created between the cloned tasks.

    Returns:
        (assignment, [EntityChange]) with one ``assignment_created`` change.
    """
    wf = get_workflow(organization_id, workflow_id)
    client = get_entity(organization_id, "client", client_id) if client_id else None
    if assigned_to_id:
        _get_user(organization_id, assigned_to_id)
    if priority not in ASSIGNMENT_PRIORITIES:
        raise ValidationError(f"Invalid priority: {priority}",
                              details={"priority": sorted(ASSIGNMENT_PRIORITIES)})

    assignment = Assignment(
        organization_id=organization_id,
        workflow_id=wf.id,
        client_id=client.id if client else None,
        name=name or (f"{wf.name}: {client.name}" if client else wf.name),
        priority=priority,
        assigned_to_id=assigned_to_id,
        due_date=parse_date(due_date),
        start_date=parse_date(start_date),
        tags=[],
    )
    db.session.add(assignment)
    db.session.flush()

    task_map = {}
    for t_stage in wf.template_stages:
        stage = WorkflowStage(
            organization_id=organization_id,
            workflow_id=wf.id,
            assignment_id=assignment.id,
            source_id=t_stage.id,
            position=t_stage.position,
            name=t_stage.name,
            description=t_stage.description,
            auto_progress=t_stage.auto_progress,
        )
        assignment.stages.append(stage)
        for t_step in t_stage.steps:
            step = WorkflowStep(
                organization_id=organization_id,
                assignment_id=assignment.id,
                source_id=t_step.id,
                position=t_step.position,
                name=t_step.name,
                description=t_step.description,
                auto_progress=t_step.auto_progress,
            )
            stage.steps.append(step)
            for t_task in t_step.tasks:
                task = WorkflowTask(
                    organization_id=organization_id,
                    assignment_id=assignment.id,
                    source_id=t_task.id,
                    position=t_task.position,
                    name=t_task.name,
                    description=t_task.description,
                    priority=t_task.priority,
                    auto_start=t_task.auto_start,
                    assigned_to_id=assigned_to_id,
                    due_date=assignment.due_date,
                )
                step.tasks.append(task)
                task_map[t_task.id] = task
    db.session.flush()

    if task_map:
        template_edges = db.session.execute(
            select(TaskDependency).where(
                TaskDependency.organization_id == organization_id,
                TaskDependency.task_id.in_(list(task_map)),
                TaskDependency.assignment_id.is_(None),
            )
        ).scalars().all()
        for edge in template_edges:
            if edge.depends_on_task_id not in task_map:
                continue
            db.session.add(TaskDependency(
                organization_id=organization_id,
                task_id=task_map[edge.task_id].id,
                depends_on_task_id=task_map[edge.depends_on_task_id].id,
                assignment_id=assignment.id,
                dependency_type=edge.dependency_type,
                lag_days=edge.lag_days,
                is_blocking=edge.is_blocking,
            ))
        db.session.flush()

    logger.info("Assignment %s instantiated from workflow %s", assignment.id, wf.id,
                extra={"organization_id": organization_id})
    change = EntityChange(
        kind="assignment_created",
        entity_type="assignment",
        entity_id=assignment.id,
        organization_id=organization_id,
        metadata={"templateId": wf.id, "clientId": assignment.client_id},
    )
    return assignment, [change]


# ── Lifecycle ────────────────────────────────────────────────────────────────


def _parent(node):
    if isinstance(node, WorkflowTask):
        return node.step
    if isinstance(node, WorkflowStep):
        return node.stage
    if isinstance(node, WorkflowStage):
        return node.assignment
    return None


def _apply_status(node, new_status, now, changes):
    old = node.status
    if old == new_status:
        return
    node.status = new_status
    node.updated_at = now
    if new_status == "in_progress":
        node.started_at = node.started_at or now
        node.completed_at = None
    elif new_status == "completed":
        node.started_at = node.started_at or now
        node.completed_at = now
    elif new_status == "not_started":
        node.started_at = None
        node.completed_at = None
    changes.append(_field_change(node, "status", old, new_status))


def _roll_up_start(node, now, changes):
    """Starting work marks every not-yet-started ancestor in_progress."""
    parent = _parent(node)
    while parent is not None:
        if parent.status in ("not_started", "blocked", "completed"):
            _apply_status(parent, "in_progress", now, changes)
        parent = _parent(parent)


def _all_tasks_complete_change(node):
    return EntityChange(
        kind="all_tasks_complete",
        entity_type=NODE_TYPES[type(node)],
        entity_id=node.id,
        organization_id=node.organization_id,
    )


def eligible_changes(tasks):
    return [
        EntityChange(
            kind="task_eligible",
            entity_type="task",
            entity_id=t.id,
            organization_id=t.organization_id,
            metadata={
                "dependencyTypes": dependency_service.dependency_types_for(t),
                "eligibleAt": as_utc(t.eligible_at).isoformat() if t.eligible_at else None,
            },
        )
        for t in tasks
    ]


def _start_next_stage(stage, now, changes):
    assignment = stage.assignment
    if assignment is None:
        return
    for nxt in assignment.stages:
        if nxt.position > stage.position and nxt.status == "not_started":
            _apply_status(nxt, "in_progress", now, changes)
            return


def _check_assignment_complete(assignment, now, changes):
    if assignment is None or assignment.status == "completed" or not assignment.stages:
        return
    if all(s.status == "completed" for s in assignment.stages):
        _apply_status(assignment, "completed", now, changes)


def _lock_roll_up(task):
    """
    Row-lock the task's assignment, stage and step (always in that order),
    then reload the assignment's tasks.

    Of two requests finishing the last two open tasks of a stage, the
    second blocks here until the first commits and then sees both done.
    SQLite ignores FOR UPDATE; its writers are serialized anyway.
    """
    step = task.step
    for model, ident in ((Assignment, task.assignment_id),
                         (WorkflowStage, step.stage_id),
                         (WorkflowStep, step.id)):
        db.session.execute(
            select(model).where(model.id == ident)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
    db.session.execute(
        select(WorkflowTask).where(WorkflowTask.assignment_id == task.assignment_id)
        .execution_options(populate_existing=True)
    ).scalars().all()


def _after_task_completed(task, now, changes):
    _lock_roll_up(task)
    step = task.step
    if all(t.status == "completed" for t in step.tasks):
        changes.append(_all_tasks_complete_change(step))
        if step.auto_progress and step.status != "completed":
            _apply_status(step, "completed", now, changes)

    stage = step.stage
    if all(t.status == "completed" for t in stage.iter_tasks()):
        changes.append(_all_tasks_complete_change(stage))
        if stage.auto_progress and stage.status != "completed":
            _apply_status(stage, "completed", now, changes)
            _start_next_stage(stage, now, changes)
            _check_assignment_complete(stage.assignment, now, changes)

    assignment = stage.assignment
    if assignment is not None and all(t.status == "completed" for t in assignment.iter_tasks()):
        changes.append(_all_tasks_complete_change(assignment))


def set_node_status(node, new_status, now=None, *, enforce_dependencies=True):
    """
    Transition a task, step, stage or assignment.

    Tasks are gated by their blocking dependencies, start and finish
    satisfy outgoing edges, and the hierarchy is rolled up. Setting the
    current status again is a no-op.

    Raises:
        ValidationError: invalid transition or unmet dependency.
    """
    now = _now(now)
    if new_status not in NODE_STATUSES:
        raise ValidationError(f"Invalid status: {new_status}",
                              details={"status": sorted(NODE_STATUSES)})
    old = node.status
    if old == new_status:
        return []
    if not validate_node_transition(old, new_status):
        raise ValidationError(f"Invalid transition: {old} → {new_status}",
                              details={"from": old, "to": new_status})

    is_task = isinstance(node, WorkflowTask)
    starting = new_status in ("in_progress", "completed") and node.started_at is None
    if is_task and node.assignment_id is None:
        raise ValidationError("Template tasks have no lifecycle")
    if is_task and enforce_dependencies:
        if starting:
            dependency_service.assert_can_start(node, now)
        if new_status == "completed":
            dependency_service.assert_can_finish(node)

    changes = []
    _apply_status(node, new_status, now, changes)
    db.session.flush()

    if new_status in ("in_progress", "completed"):
        _roll_up_start(node, now, changes)

    if is_task:
        if starting:
            changes.extend(eligible_changes(dependency_service.on_task_started(node, now)))
        if new_status == "completed":
            changes.extend(eligible_changes(dependency_service.on_task_completed(node, now)))
            _after_task_completed(node, now, changes)
    elif isinstance(node, WorkflowStage) and new_status == "completed":
        _check_assignment_complete(node.assignment, now, changes)

    db.session.flush()
    return changes


def auto_start_task(task, now=None):
    """
    Start a released auto_start task. The CAS in try_auto_start decides
    the winner; the winner alone gets the roll-ups and the status change.
    """
    now = _now(now)
    if not dependency_service.try_auto_start(task, now):
        return []
    changes = [_field_change(task, "status", "not_started", "in_progress")]
    _roll_up_start(task, now, changes)
    changes.extend(eligible_changes(dependency_service.on_task_started(task, now)))
    db.session.flush()
    return changes


def advance_stage(assignment, now=None):
    """Complete the current stage of the assignment and start the next one."""
    now = _now(now)
    current = next((s for s in assignment.stages if s.status == "in_progress"), None)
    if current is None:
        current = next((s for s in assignment.stages if s.status != "completed"), None)
    if current is None:
        raise ValidationError(f"Assignment {assignment.id} has no stage left to advance")
    changes = []
    _apply_status(current, "completed", now, changes)
    _start_next_stage(current, now, changes)
    _roll_up_start(current, now, changes)
    _check_assignment_complete(assignment, now, changes)
    db.session.flush()
    return changes


# ── Field writes ─────────────────────────────────────────────────────────────


def _coerce(organization_id, entity_type, field, value):
    if field in _DATE_FIELDS:
        if value in (None, ""):
            return None
        parsed = parse_date(value)
        if parsed is None:
            raise ValidationError(f"Invalid date for {field}: {value!r}")
        return parsed
    if field in _BOOL_FIELDS:
        return value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes")
    if field in _USER_FIELDS:
        if value in (None, ""):
            return None
        try:
            return _get_user(organization_id, int(value)).id
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be a user id", details={field: value})
    if field == "priority" and value not in ASSIGNMENT_PRIORITIES:
        raise ValidationError(f"Invalid priority: {value}",
                              details={"priority": sorted(ASSIGNMENT_PRIORITIES)})
    if field == "name" and not str(value or "").strip():
        raise ValidationError("name cannot be empty")
    return value


def update_field(organization_id, entity_type, entity_id, field, value, now=None):
    """Write one whitelisted field; ``status`` goes through set_node_status."""
    now = _now(now)
    entity = get_entity(organization_id, entity_type, entity_id)
    if field == "status" and entity_type in ("task", "step", "stage", "assignment"):
        return set_node_status(entity, value, now)
    if field not in FIELD_WHITELIST.get(entity_type, set()):
        raise ValidationError(
            f"Field '{field}' is not writable on {entity_type}",
            details={"writable": sorted(FIELD_WHITELIST.get(entity_type, set()))},
        )
    new_value = _coerce(organization_id, entity_type, field, value)
    old_value = getattr(entity, field)
    if old_value == new_value:
        return []
    setattr(entity, field, new_value)
    entity.updated_at = now
    db.session.flush()
    return [_field_change(entity, field, old_value, new_value, entity_type)]


def _tag_target(organization_id, target_type, target_id):
    if target_type not in ("client", "assignment"):
        raise ValidationError(f"Tags live on clients and assignments, not {target_type}")
    return get_entity(organization_id, target_type, target_id)


def apply_tags(organization_id, target_type, target_id, tags, now=None):
    entity = _tag_target(organization_id, target_type, target_id)
    old = list(entity.tags or [])
    new = old + [t for t in tags if t not in old]
    if new == old:
        return []
    entity.tags = new
    entity.updated_at = _now(now)
    db.session.flush()
    return [_field_change(entity, "tags", old, new, target_type)]


def remove_tags(organization_id, target_type, target_id, tags=(), *, clear_all=False, now=None):
    entity = _tag_target(organization_id, target_type, target_id)
    old = list(entity.tags or [])
    new = [] if clear_all else [t for t in old if t not in set(tags)]
    if new == old:
        return []
    entity.tags = new
    entity.updated_at = _now(now)
    db.session.flush()
    return [_field_change(entity, "tags", old, new, target_type)]


def assign_user(organization_id, entity_type, entity_id, user_id, now=None):
    if entity_type not in ("task", "assignment"):
        raise ValidationError(f"Cannot assign a user to {entity_type}")
    return update_field(organization_id, entity_type, entity_id, "assigned_to_id", user_id, now)


def create_task(step, *, name, description="", assigned_to_id=None, due_date=None,
                auto_start=False, now=None):
    """Append a task to an assignment step."""
    if step.assignment_id is None:
        raise ValidationError("Tasks can only be created on assignment steps")
    if assigned_to_id:
        _get_user(step.organization_id, assigned_to_id)
    position = max((t.position for t in step.tasks), default=-1) + 1
    task = WorkflowTask(
        organization_id=step.organization_id,
        assignment_id=step.assignment_id,
        position=position,
        name=name,
        description=description,
        assigned_to_id=assigned_to_id,
        due_date=parse_date(due_date),
        auto_start=auto_start,
        created_at=_now(now),
        updated_at=_now(now),
    )
    step.tasks.append(task)
    db.session.flush()
    return task


def add_months(day, months):
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return day.replace(year=year, month=month,
                       day=min(day.day, calendar.monthrange(year, month)[1]))


# ── Clients ──────────────────────────────────────────────────────────────────


def add_client_contact(organization_id, client_id, *, name, email=None, role="primary"):
    client = get_entity(organization_id, "client", client_id)
    if not (name or "").strip():
        raise ValidationError("name is required", details={"name": "required"})
    if role not in CONTACT_ROLES:
        raise ValidationError(f"Invalid role: {role}", details={"role": sorted(CONTACT_ROLES)})
    contact = ClientContact(
        organization_id=organization_id,
        client_id=client.id,
        name=name.strip(),
        email=email,
        role=role,
    )
    db.session.add(contact)
    db.session.flush()
    change = EntityChange(
        kind="contact_added",
        entity_type="client",
        entity_id=client.id,
        organization_id=organization_id,
        metadata={"contactId": contact.id, "contactRole": role, "contactEmail": email},
    )
    return contact, [change]


# ── Budgets ──────────────────────────────────────────────────────────────────


def check_budget_threshold(threshold, now=None):
    """
    Flip is_triggered once the spend reaches the threshold.

    The guarded UPDATE is the atomic step: concurrent spend recordings
    cannot both flip the flag, so budget_threshold fires once per crossing.
    """
    now = _now(now)
    result = db.session.execute(
        update(BudgetThreshold)
        .where(
            BudgetThreshold.id == threshold.id,
            BudgetThreshold.organization_id == threshold.organization_id,
            BudgetThreshold.is_triggered.is_(False),
            BudgetThreshold.current_spend * 100
            >= BudgetThreshold.budget_amount * BudgetThreshold.threshold_percentage,
        )
        .values(is_triggered=True, triggered_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return []
    db.session.refresh(threshold)
    logger.info(
        "Budget threshold %s crossed at %.2f%%", threshold.id, threshold.spend_percentage,
        extra={"organization_id": threshold.organization_id},
    )
    return [EntityChange(
        kind="budget_crossed",
        entity_type="assignment",
        entity_id=threshold.assignment_id,
        organization_id=threshold.organization_id,
        field_name="current_spend",
        new_value=threshold.current_spend,
        metadata={
            "budgetThresholdId": threshold.id,
            "spendPercentage": threshold.spend_percentage,
            "thresholdPercentage": threshold.threshold_percentage,
            "budgetAmount": threshold.budget_amount,
        },
    )]


def create_budget_threshold(organization_id, assignment_id, *, budget_amount,
                            threshold_percentage=80.0):
    assignment = get_assignment(organization_id, assignment_id)
    if budget_amount is None or float(budget_amount) <= 0:
        raise ValidationError("budget_amount must be positive")
    bt = BudgetThreshold(
        organization_id=organization_id,
        assignment_id=assignment.id,
        budget_amount=float(budget_amount),
        threshold_percentage=float(threshold_percentage),
        current_spend=0.0,
    )
    db.session.add(bt)
    db.session.flush()
    return bt


def record_spend(organization_id, threshold_id, amount, now=None):
    """Add spend atomically and report a threshold crossing, if any."""
    bt = BudgetThreshold.get_scoped(organization_id, threshold_id)
    if bt is None:
        raise NotFoundError(resource="BudgetThreshold", resource_id=threshold_id,
                            organization_id=organization_id)
    db.session.execute(
        update(BudgetThreshold)
        .where(BudgetThreshold.id == bt.id, BudgetThreshold.organization_id == organization_id)
        .values(current_spend=BudgetThreshold.current_spend + float(amount))
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(bt)
    return check_budget_threshold(bt, now)


def revise_budget(organization_id, threshold_id, *, budget_amount=None,
                  threshold_percentage=None, now=None):
    """Explicit revision: the only path that re-arms a triggered threshold."""
    bt = BudgetThreshold.get_scoped(organization_id, threshold_id)
    if bt is None:
        raise NotFoundError(resource="BudgetThreshold", resource_id=threshold_id,
                            organization_id=organization_id)
    if budget_amount is not None:
        if float(budget_amount) <= 0:
            raise ValidationError("budget_amount must be positive")
        bt.budget_amount = float(budget_amount)
    if threshold_percentage is not None:
        bt.threshold_percentage = float(threshold_percentage)
    bt.is_triggered = False
    bt.triggered_at = None
    db.session.flush()
    return check_budget_threshold(bt, now)


def due_in(now, days):
    """Calendar date ``days`` after ``now`` (UTC)."""
    return (_now(now) + timedelta(days=days)).date()
