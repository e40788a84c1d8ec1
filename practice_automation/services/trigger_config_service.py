"""
TriggerConfig CRUD.

Configs and actions are parsed into their typed specs before anything is
saved, so the dispatcher only ever meets rows that parse. A trigger hangs
off a template node: the workflow, one of its stages, or one of its steps
(none of them means organization-wide).
"""

import logging

from sqlalchemy import select

from practice_automation.core.exceptions import NotFoundError, ValidationError
from practice_automation.models import db
from practice_automation.models.automation import TRIGGER_TYPES, TriggerConfig
from practice_automation.models.workflow import Workflow, WorkflowStage, WorkflowStep
from practice_automation.services.action_specs import parse_actions
from practice_automation.services.trigger_specs import parse_trigger_config

logger = logging.getLogger(__name__)

_UPDATABLE = ("name", "config", "actions", "is_enabled", "transactional")


def get_trigger(organization_id, trigger_id):
    trigger = TriggerConfig.get_scoped(organization_id, trigger_id)
    if trigger is None:
        raise NotFoundError(resource="TriggerConfig", resource_id=trigger_id,
                            organization_id=organization_id)
    return trigger


def list_triggers(organization_id, *, trigger_type=None, workflow_id=None, enabled=None):
    stmt = select(TriggerConfig).where(TriggerConfig.organization_id == organization_id)
    if trigger_type:
        stmt = stmt.where(TriggerConfig.trigger_type == trigger_type)
    if workflow_id:
        stmt = stmt.where(TriggerConfig.workflow_id == workflow_id)
    if enabled is not None:
        stmt = stmt.where(TriggerConfig.is_enabled.is_(enabled))
    return db.session.execute(stmt.order_by(TriggerConfig.id)).scalars().all()


def _template(model, organization_id, node_id, label):
    node = model.get_scoped(organization_id, node_id)
    if node is None:
        raise NotFoundError(resource=model.__name__, resource_id=node_id,
                            organization_id=organization_id)
    if getattr(node, "assignment_id", None) is not None:
        raise ValidationError(f"Triggers attach to template {label}s, not assignment copies",
                              details={f"{label}_id": node_id})
    return node


def _resolve_scope(organization_id, workflow_id, stage_id, step_id):
    """Fill in the parent ids implied by a stage or step and check they agree."""
    if step_id:
        step = _template(WorkflowStep, organization_id, step_id, "step")
        if stage_id and stage_id != step.stage_id:
            raise ValidationError("step_id does not belong to stage_id",
                                  details={"step_id": step_id, "stage_id": stage_id})
        stage_id = step.stage_id
    if stage_id:
        stage = _template(WorkflowStage, organization_id, stage_id, "stage")
        if workflow_id and workflow_id != stage.workflow_id:
            raise ValidationError("stage_id does not belong to workflow_id",
                                  details={"stage_id": stage_id, "workflow_id": workflow_id})
        workflow_id = stage.workflow_id
    if workflow_id and Workflow.get_scoped(organization_id, workflow_id) is None:
        raise NotFoundError(resource="Workflow", resource_id=workflow_id,
                            organization_id=organization_id)
    return workflow_id, stage_id, step_id


def create_trigger(organization_id, data):
    """Validate and persist a TriggerConfig. Commits."""
    trigger_type = data.get("trigger_type")
    if trigger_type not in TRIGGER_TYPES:
        raise ValidationError(f"Unknown trigger type '{trigger_type}'",
                              details={"trigger_type": sorted(TRIGGER_TYPES)})
    config = data.get("config") or {}
    actions = data.get("actions") or []
    parse_trigger_config(trigger_type, config)
    parse_actions(actions)

    workflow_id, stage_id, step_id = _resolve_scope(
        organization_id, data.get("workflow_id"), data.get("stage_id"), data.get("step_id"),
    )
    trigger = TriggerConfig(
        organization_id=organization_id,
        name=(data.get("name") or trigger_type).strip(),
        trigger_type=trigger_type,
        workflow_id=workflow_id,
        stage_id=stage_id,
        step_id=step_id,
        config=config,
        actions=actions,
        is_enabled=bool(data.get("is_enabled", True)),
        transactional=bool(data.get("transactional", False)),
    )
    db.session.add(trigger)
    db.session.commit()
    logger.info("Trigger %s created: %s (%s)", trigger.id, trigger_type, trigger.scope,
                extra={"organization_id": organization_id, "trigger_type": trigger_type})
    return trigger


def update_trigger(organization_id, trigger_id, data):
    """Enable/disable or replace config/actions. Commits.

    Disabling stops future matches only; fires already dispatched finish.
    """
    trigger = get_trigger(organization_id, trigger_id)
    if "config" in data:
        parse_trigger_config(trigger.trigger_type, data["config"] or {})
    if "actions" in data:
        parse_actions(data["actions"] or [])

    for key in _UPDATABLE:
        if key in data:
            value = data[key]
            if key in ("is_enabled", "transactional"):
                value = bool(value)
            elif key == "config":
                value = value or {}
            elif key == "actions":
                value = value or []
            setattr(trigger, key, value)

    if "config" in data or data.get("is_enabled"):
        # schedule triggers recompute their next run from the new settings
        trigger.next_run_at = None
        trigger.locked_at = None
    db.session.commit()
    logger.info("Trigger %s updated (%s)", trigger.id, ", ".join(k for k in data if k in _UPDATABLE),
                extra={"organization_id": organization_id, "trigger_type": trigger.trigger_type})
    return trigger


def delete_trigger(organization_id, trigger_id):
    trigger = get_trigger(organization_id, trigger_id)
    db.session.delete(trigger)
    db.session.commit()
