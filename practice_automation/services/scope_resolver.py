"""Entity scope resolver for trigger matching.

Walks an entity up its hierarchy (task → step → stage → assignment →
workflow) and reports the template ids a TriggerConfig may be attached
to, together with the snapshot the condition evaluator reads.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from practice_automation.models import db
from practice_automation.models.workflow import Assignment
from practice_automation.services.automation_events import ScopeChain
from practice_automation.services.workflow_service import get_entity

logger = logging.getLogger(__name__)


def _dict(obj):
    return obj.to_dict() if obj is not None else None


def resolve_scope(organization_id: int, entity_type: str, entity_id: int | None) -> ScopeChain:
    """Resolve the scope chain of one entity, scoped to the organization.

    Raises NotFoundError when the entity does not exist in the organization.
    """
    entity = get_entity(organization_id, entity_type, entity_id)
    scope = ScopeChain(entity_type=entity_type, entity_id=entity_id)

    task = step = stage = assignment = workflow = client = None
    if entity_type == "task":
        task = entity
        step = task.step
        stage = step.stage
    elif entity_type == "step":
        step = entity
        stage = step.stage
    elif entity_type == "stage":
        stage = entity
    elif entity_type == "assignment":
        assignment = entity
    elif entity_type == "workflow":
        workflow = entity
    elif entity_type == "client":
        client = entity

    if stage is not None:
        assignment = stage.assignment
        workflow = stage.workflow
        scope.stage_template_ids.add(stage.template_id)
    if step is not None:
        scope.step_template_ids.add(step.template_id)
    if assignment is not None:
        scope.assignment_id = assignment.id
        workflow = workflow or assignment.workflow
        client = assignment.client
    if workflow is not None:
        scope.workflow_ids.add(workflow.id)

    if entity_type == "client":
        # A client reaches every workflow it has work in
        scope.workflow_ids.update(db.session.execute(
            select(Assignment.workflow_id).where(
                Assignment.organization_id == organization_id,
                Assignment.client_id == entity.id,
            )
        ).scalars().all())

    scope.entity_template_id = getattr(entity, "template_id", getattr(entity, "id", None))

    assignee = None
    if task is not None and task.assignee is not None:
        assignee = task.assignee
    elif assignment is not None:
        assignee = assignment.assignee

    scope.snapshot = {
        "organization_id": organization_id,
        "entity_type": entity_type,
        "entity": _dict(entity),
        "task": _dict(task),
        "step": _dict(step),
        "stage": _dict(stage),
        "assignment": _dict(assignment),
        "workflow": _dict(workflow),
        "client": _dict(client),
        "assignee": _dict(assignee),
        "user": _dict(entity) if entity_type == "user" else None,
    }
    return scope
