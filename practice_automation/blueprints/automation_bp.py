"""
Automation Blueprint — thin REST adapter over the automation engine.

Endpoints (prefix /api/v1/automation, organization_id as query/body param):
    POST   /workflows                       — create template (nested stages/steps/tasks)
    GET    /workflows/<id>                  — template tree
    POST   /workflows/<id>/instantiate      — new Assignment (+ template_instantiated)
    GET    /assignments/<id>                — assignment tree with progress
    GET    /assignments/<id>/critical-path  — longest finish_to_start chain
    POST   /tasks/<id>/transition           — status change (+ cascades)
    PATCH  /entities/<type>/<id>            — whitelisted field update
    GET    /tasks/<id>/dependencies         — prerequisites and dependents
    POST   /tasks/<id>/dependencies         — add edge (409 on cycle)
    DELETE /dependencies/<id>               — remove edge
    POST   /clients/<id>/contacts           — add contact (+ client_contact_added)
    POST   /budget-thresholds               — watch an assignment budget
    POST   /budget-thresholds/<id>/spend    — record spend (+ budget_threshold)
    GET    /triggers                        — list trigger configs
    POST   /triggers                        — create trigger config
    PUT    /triggers/<id>                   — enable/disable/replace config
    DELETE /triggers/<id>                   — delete trigger config
    POST   /fire                            — externally originated events
    GET    /events                          — events/history view
    GET    /scheduler/jobs                  — registered jobs and run history
    POST   /scheduler/run                   — run all scans once

Authentication and RBAC live in front of this service; organization_id is
taken as given.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from practice_automation.core.exceptions import (
    ConflictError,
    CycleError,
    NotFoundError,
    ValidationError,
)
from practice_automation.models import db
from practice_automation.services import (
    dependency_service,
    event_log,
    trigger_config_service,
    workflow_service,
)
from practice_automation.services.scheduler_service import SchedulerService
from practice_automation.services.trigger_scheduler import TriggerScheduler
from practice_automation.utils.errors import E, api_error
from practice_automation.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

automation_bp = Blueprint("automation", __name__, url_prefix="/api/v1/automation")

# Trigger types that originate outside the engine and may be fired over HTTP
EXTERNAL_TRIGGER_TYPES = frozenset({"manual", "webhook", "form", "email", "integration_event"})


# ── Error handlers ───────────────────────────────────────────────────────────


@automation_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@automation_bp.errorhandler(CycleError)
def _handle_cycle(error: CycleError):
    return api_error(E.CONFLICT_CYCLE, str(error), details=error.details)


@automation_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@automation_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error))


@automation_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    db.session.rollback()
    logger.exception("Unexpected error in automation_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _engine():
    return current_app.extensions["automation_engine"]


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _org_id():
    """organization_id from the query string or JSON body.

    Returns (organization_id, err_response).
    """
    org_id = request.args.get("organization_id", type=int)
    if org_id is None:
        raw = _body().get("organization_id")
        try:
            org_id = int(raw) if raw is not None else None
        except (TypeError, ValueError):
            org_id = None
    if org_id is None:
        return None, api_error(E.VALIDATION_REQUIRED, "organization_id is required")
    return org_id, None


def _events(events):
    return [e.to_dict() for e in events]


# ── Workflows & assignments ──────────────────────────────────────────────────


@automation_bp.route("/workflows", methods=["POST"])
def create_workflow():
    org_id, err = _org_id()
    if err:
        return err
    wf = workflow_service.create_workflow(org_id, _body())
    db.session.commit()
    return jsonify(wf.to_dict(include_children=True)), 201


@automation_bp.route("/workflows/<int:workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    org_id, err = _org_id()
    if err:
        return err
    wf = workflow_service.get_workflow(org_id, workflow_id)
    return jsonify(wf.to_dict(include_children=True)), 200


@automation_bp.route("/workflows/<int:workflow_id>/instantiate", methods=["POST"])
def instantiate_workflow(workflow_id):
    """Body: client_id, name, due_date, start_date, priority, assigned_to_id (all optional)."""
    org_id, err = _org_id()
    if err:
        return err
    data = _body()
    kwargs = {k: data[k] for k in ("client_id", "name", "due_date", "start_date",
                                   "priority", "assigned_to_id") if k in data}
    assignment, events = _engine().instantiate_workflow(org_id, workflow_id, **kwargs)
    return jsonify({
        "assignment": assignment.to_dict(include_children=True),
        "events": _events(events),
    }), 201


@automation_bp.route("/assignments/<int:assignment_id>", methods=["GET"])
def get_assignment(assignment_id):
    org_id, err = _org_id()
    if err:
        return err
    assignment = workflow_service.get_assignment(org_id, assignment_id)
    return jsonify(assignment.to_dict(include_children=True)), 200


@automation_bp.route("/assignments/<int:assignment_id>/critical-path", methods=["GET"])
def get_critical_path(assignment_id):
    org_id, err = _org_id()
    if err:
        return err
    return jsonify(dependency_service.critical_path(org_id, assignment_id)), 200


@automation_bp.route("/tasks/<int:task_id>/transition", methods=["POST"])
def transition_task(task_id):
    """Body: {"status": "in_progress" | "completed" | "blocked" | "not_started"}."""
    org_id, err = _org_id()
    if err:
        return err
    new_status = _body().get("status")
    if not new_status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    task, events = _engine().transition_task(org_id, task_id, new_status)
    return jsonify({"task": task.to_dict(), "events": _events(events)}), 200


@automation_bp.route("/entities/<entity_type>/<int:entity_id>", methods=["PATCH"])
def update_entity_field(entity_type, entity_id):
    """Body: {"field": "...", "value": ...}."""
    org_id, err = _org_id()
    if err:
        return err
    data = _body()
    if not data.get("field"):
        return api_error(E.VALIDATION_REQUIRED, "field is required")
    entity, events = _engine().update_field(org_id, entity_type, entity_id,
                                            data["field"], data.get("value"))
    return jsonify({"entity": entity.to_dict(), "events": _events(events)}), 200


# ── Dependencies ─────────────────────────────────────────────────────────────


@automation_bp.route("/tasks/<int:task_id>/dependencies", methods=["GET"])
def list_dependencies(task_id):
    org_id, err = _org_id()
    if err:
        return err
    return jsonify(dependency_service.list_dependencies(org_id, task_id)), 200


@automation_bp.route("/tasks/<int:task_id>/dependencies", methods=["POST"])
def add_dependency(task_id):
    """Body: depends_on_task_id (required), dependency_type, lag_days, is_blocking."""
    org_id, err = _org_id()
    if err:
        return err
    data = _body()
    if not data.get("depends_on_task_id"):
        return api_error(E.VALIDATION_REQUIRED, "depends_on_task_id is required")
    try:
        lag_days = int(data.get("lag_days") or 0)
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "lag_days must be an integer")
    dep = dependency_service.add_dependency(
        org_id, task_id, data["depends_on_task_id"],
        data.get("dependency_type") or "finish_to_start", lag_days,
        is_blocking=bool(data.get("is_blocking", True)),
    )
    return jsonify(dep.to_dict()), 201


@automation_bp.route("/dependencies/<int:dependency_id>", methods=["DELETE"])
def remove_dependency(dependency_id):
    org_id, err = _org_id()
    if err:
        return err
    dependency_service.remove_dependency(org_id, dependency_id)
    return "", 204


# ── Clients & budgets ────────────────────────────────────────────────────────


@automation_bp.route("/clients/<int:client_id>/contacts", methods=["POST"])
def add_client_contact(client_id):
    org_id, err = _org_id()
    if err:
        return err
    data = _body()
    if not (data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    contact, events = _engine().add_client_contact(
        org_id, client_id, name=data["name"].strip(),
        email=data.get("email"), role=data.get("role") or "primary",
    )
    return jsonify({"contact": contact.to_dict(), "events": _events(events)}), 201


@automation_bp.route("/budget-thresholds", methods=["POST"])
def create_budget_threshold():
    """Body: assignment_id, budget_amount (required), threshold_percentage."""
    org_id, err = _org_id()
    if err:
        return err
    data = _body()
    if not data.get("assignment_id") or data.get("budget_amount") is None:
        return api_error(E.VALIDATION_REQUIRED, "assignment_id and budget_amount are required")
    threshold = workflow_service.create_budget_threshold(
        org_id, data["assignment_id"],
        budget_amount=data["budget_amount"],
        threshold_percentage=data.get("threshold_percentage", 80.0),
    )
    db.session.commit()
    return jsonify(threshold.to_dict()), 201


@automation_bp.route("/budget-thresholds/<int:threshold_id>/spend", methods=["POST"])
def record_spend(threshold_id):
    """Body: {"amount": 125.0}."""
    org_id, err = _org_id()
    if err:
        return err
    amount = _body().get("amount")
    if amount is None:
        return api_error(E.VALIDATION_REQUIRED, "amount is required")
    _, events = _engine().record_spend(org_id, threshold_id, amount)
    return jsonify({"events": _events(events)}), 200


# ── Trigger configs ──────────────────────────────────────────────────────────


@automation_bp.route("/triggers", methods=["GET"])
def list_triggers():
    org_id, err = _org_id()
    if err:
        return err
    enabled = request.args.get("enabled")
    triggers = trigger_config_service.list_triggers(
        org_id,
        trigger_type=request.args.get("trigger_type"),
        workflow_id=request.args.get("workflow_id", type=int),
        enabled=None if enabled is None else enabled.lower() == "true",
    )
    return jsonify({"items": [t.to_dict() for t in triggers], "total": len(triggers)}), 200


@automation_bp.route("/triggers", methods=["POST"])
def create_trigger():
    org_id, err = _org_id()
    if err:
        return err
    trigger = trigger_config_service.create_trigger(org_id, _body())
    return jsonify(trigger.to_dict()), 201


@automation_bp.route("/triggers/<int:trigger_id>", methods=["PUT"])
def update_trigger(trigger_id):
    org_id, err = _org_id()
    if err:
        return err
    trigger = trigger_config_service.update_trigger(org_id, trigger_id, _body())
    return jsonify(trigger.to_dict()), 200


@automation_bp.route("/triggers/<int:trigger_id>", methods=["DELETE"])
def delete_trigger(trigger_id):
    org_id, err = _org_id()
    if err:
        return err
    trigger_config_service.delete_trigger(org_id, trigger_id)
    return "", 204


# ── Firing & history ─────────────────────────────────────────────────────────


@automation_bp.route("/fire", methods=["POST"])
def fire():
    """
    Fire an externally originated event.

    Body: type, entity_type, entity_id, field_name, old_value, new_value, metadata.
    Matching and action failures never fail the request; they show up in
    the returned events.
    """
    org_id, err = _org_id()
    if err:
        return err
    data = _body()
    trigger_type = data.get("type")
    if trigger_type not in EXTERNAL_TRIGGER_TYPES:
        return api_error(E.VALIDATION_INVALID,
                         f"type must be one of: {', '.join(sorted(EXTERNAL_TRIGGER_TYPES))}")
    if not data.get("entity_type"):
        return api_error(E.VALIDATION_REQUIRED, "entity_type is required")
    data["organization_id"] = org_id
    events = _engine().fire_trigger(data)
    return jsonify({"events": _events(events), "fired": len(events)}), 200


@automation_bp.route("/events", methods=["GET"])
def list_events():
    """Newest-first TriggerEvent page; filters mirror TriggerEvent columns."""
    org_id, err = _org_id()
    if err:
        return err
    filters = {k: v for k, v in request.args.items() if k not in ("organization_id", "limit", "offset")}
    for key in ("entity_id", "assignment_id", "workflow_id", "trigger_config_id"):
        if key in filters:
            try:
                filters[key] = int(filters[key])
            except ValueError:
                return api_error(E.VALIDATION_INVALID, f"{key} must be an integer")
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)
    items, total = event_log.history(org_id, filters, limit=limit, offset=offset)
    return jsonify({"items": _events(items), "total": total, "limit": limit, "offset": offset}), 200


# ── Scheduler ────────────────────────────────────────────────────────────────


@automation_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"jobs": SchedulerService.list_jobs()}), 200


@automation_bp.route("/scheduler/run", methods=["POST"])
def run_scheduler():
    """Run every scan once. Body: now (ISO datetime, optional), scans (list, optional)."""
    data = _body()
    now = parse_datetime(data.get("now")) if data.get("now") else None
    if data.get("now") and now is None:
        return api_error(E.VALIDATION_INVALID, "now must be an ISO datetime")
    scheduler = TriggerScheduler.from_config(_engine(), current_app.config)
    summary = scheduler.run_all(now=now, only=data.get("scans"))
    return jsonify(summary), 200
