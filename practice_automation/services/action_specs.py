"""
Typed action configurations.

An ActionConfig blob ``{"type": ..., "config": {...}, "conditions": [...]}``
parses into one frozen dataclass per action type. Like the trigger
registry, the action registry is complete by construction: ACTION_TYPES
is derived from it and the executor checks it has a handler for each.

Recipient tokens understood by the message-sending actions:
    "assignee"  the task / assignment assignee
    "owner"     the client owner
    "client"    the client's own email (send_email only)
    an email address or a numeric user id
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from practice_automation.core.exceptions import ConditionEvaluationError, ValidationError
from practice_automation.models.notification import NOTIFICATION_TYPES
from practice_automation.models.workflow import NODE_STATUSES
from practice_automation.services.condition_evaluator import validate_conditions
from practice_automation.services.trigger_specs import config_int, config_str

ACTION_SPECS: dict[str, type["ActionSpec"]] = {}

NODE_ENTITIES = {"task", "step", "stage", "assignment"}
TAG_TARGETS = {"client", "assignment"}
DELAY_UNITS = {"minutes", "hours", "days", "weeks", "months"}
HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


def action_spec(action_type: str):
    def decorator(cls):
        cls.action_type = action_type
        ACTION_SPECS[action_type] = cls
        return cls
    return decorator


def _tags(config: dict, *, required: bool) -> tuple:
    raw = config.get("tags")
    if raw is None:
        if required:
            raise ValidationError("'tags' is required", details={"tags": "required"})
        return ()
    if not isinstance(raw, list) or not all(isinstance(t, str) and t.strip() for t in raw):
        raise ValidationError("'tags' must be a list of non-empty strings", details={"tags": raw})
    return tuple(dict.fromkeys(t.strip() for t in raw))


@dataclass(frozen=True)
class ActionSpec:
    action_type: ClassVar[str] = ""
    # Entity-store mutations re-enter the dispatcher as new trigger sources
    mutates_store: ClassVar[bool] = False

    conditions: tuple = ()

    @classmethod
    def parse(cls, config: dict, conditions: tuple) -> "ActionSpec":
        return cls(conditions=conditions)


# ── Messaging ────────────────────────────────────────────────────────────────


@action_spec("send_email")
@dataclass(frozen=True)
class SendEmailAction(ActionSpec):
    to: str = "assignee"
    subject: str = ""
    body: str = ""

    @classmethod
    def parse(cls, config, conditions):
        return cls(
            conditions=conditions,
            to=config_str(config, "to", "assignee"),
            subject=config_str(config, "subject", required=True),
            body=config_str(config, "body", ""),
        )


@action_spec("send_notification")
@dataclass(frozen=True)
class SendNotificationAction(ActionSpec):
    title: str = ""
    message: str = ""
    notification_type: str = "info"
    recipient: str | None = "assignee"

    @classmethod
    def parse(cls, config, conditions):
        return cls(
            conditions=conditions,
            title=config_str(config, "title", required=True),
            message=config_str(config, "message", ""),
            notification_type=config_str(config, "type", "info", choices=NOTIFICATION_TYPES),
            recipient=config_str(config, "recipient", "assignee"),
        )


@action_spec("request_documents")
@dataclass(frozen=True)
class RequestDocumentsAction(ActionSpec):
    documents: tuple = ()
    message: str = ""
    recipient: str | None = "assignee"
    due_in_days: int | None = None

    @classmethod
    def parse(cls, config, conditions):
        docs = config.get("documents")
        if not isinstance(docs, list) or not docs:
            raise ValidationError("'documents' must be a non-empty list", details={"documents": docs})
        return cls(
            conditions=conditions,
            documents=tuple(str(d) for d in docs),
            message=config_str(config, "message", ""),
            recipient=config_str(config, "recipient", "assignee"),
            due_in_days=config_int(config, "dueInDays", minimum=0),
        )


# ── Entity store mutations ───────────────────────────────────────────────────


@action_spec("create_task")
@dataclass(frozen=True)
class CreateTaskAction(ActionSpec):
    mutates_store: ClassVar[bool] = True

    name: str = ""
    description: str = ""
    step_id: int | None = None
    assign_to: str | None = None
    due_in_days: int | None = None
    auto_start: bool = False

    @classmethod
    def parse(cls, config, conditions):
        return cls(
            conditions=conditions,
            name=config_str(config, "name", required=True),
            description=config_str(config, "description", ""),
            step_id=config_int(config, "stepId"),
            assign_to=config_str(config, "assignTo"),
            due_in_days=config_int(config, "dueInDays", minimum=0),
            auto_start=bool(config.get("autoStart", False)),
        )


@action_spec("schedule_followup")
@dataclass(frozen=True)
class ScheduleFollowupAction(ActionSpec):
    mutates_store: ClassVar[bool] = True

    name: str = "Follow up"
    delay: int = 1
    delay_unit: str = "days"
    assign_to: str | None = "assignee"

    @classmethod
    def parse(cls, config, conditions):
        return cls(
            conditions=conditions,
            name=config_str(config, "name", "Follow up"),
            delay=config_int(config, "delay", 1, minimum=0),
            delay_unit=config_str(config, "delayUnit", "days", choices=DELAY_UNITS),
            assign_to=config_str(config, "assignTo", "assignee"),
        )


@action_spec("update_field")
@dataclass(frozen=True)
class UpdateFieldAction(ActionSpec):
    mutates_store: ClassVar[bool] = True

    entity: str | None = None
    field: str = ""
    value: object = None

    @classmethod
    def parse(cls, config, conditions):
        if "value" not in config:
            raise ValidationError("'value' is required", details={"value": "required"})
        return cls(
            conditions=conditions,
            entity=config_str(config, "entity", choices=NODE_ENTITIES | {"client"}),
            field=config_str(config, "field", required=True),
            value=config.get("value"),
        )


@action_spec("update_status")
@dataclass(frozen=True)
class UpdateStatusAction(ActionSpec):
    mutates_store: ClassVar[bool] = True

    entity: str | None = None
    status: str = "in_progress"

    @classmethod
    def parse(cls, config, conditions):
        return cls(
            conditions=conditions,
            entity=config_str(config, "entity", choices=NODE_ENTITIES),
            status=config_str(config, "status", required=True, choices=NODE_STATUSES),
        )


@action_spec("advance_stage")
@dataclass(frozen=True)
class AdvanceStageAction(ActionSpec):
    mutates_store: ClassVar[bool] = True


@action_spec("apply_tags")
@dataclass(frozen=True)
class ApplyTagsAction(ActionSpec):
    mutates_store: ClassVar[bool] = True

    target: str = "client"
    tags: tuple = ()

    @classmethod
    def parse(cls, config, conditions):
        return cls(
            conditions=conditions,
            target=config_str(config, "targetType", "client", choices=TAG_TARGETS),
            tags=_tags(config, required=True),
        )


@action_spec("remove_tags")
@dataclass(frozen=True)
class RemoveTagsAction(ActionSpec):
    mutates_store: ClassVar[bool] = True

    target: str = "client"
    tags: tuple = ()
    clear_all: bool = False

    @classmethod
    def parse(cls, config, conditions):
        clear_all = bool(config.get("clearAll", False))
        return cls(
            conditions=conditions,
            target=config_str(config, "targetType", "client", choices=TAG_TARGETS),
            tags=_tags(config, required=not clear_all),
            clear_all=clear_all,
        )


@action_spec("assign_user")
@dataclass(frozen=True)
class AssignUserAction(ActionSpec):
    mutates_store: ClassVar[bool] = True

    user_id: int = 0
    entity: str | None = None

    @classmethod
    def parse(cls, config, conditions):
        return cls(
            conditions=conditions,
            user_id=config_int(config, "userId", required=True, minimum=1),
            entity=config_str(config, "entity", choices={"task", "assignment"}),
        )


@action_spec("trigger_workflow")
@dataclass(frozen=True)
class TriggerWorkflowAction(ActionSpec):
    mutates_store: ClassVar[bool] = True

    workflow_id: int = 0
    client_id: int | None = None
    name: str | None = None
    due_in_days: int | None = None

    @classmethod
    def parse(cls, config, conditions):
        return cls(
            conditions=conditions,
            workflow_id=config_int(config, "workflowId", required=True, minimum=1),
            client_id=config_int(config, "clientId"),
            name=config_str(config, "name"),
            due_in_days=config_int(config, "dueInDays", minimum=0),
        )


# ── External calls ───────────────────────────────────────────────────────────


@action_spec("run_ai_agent")
@dataclass(frozen=True)
class RunAiAgentAction(ActionSpec):
    agent_slug: str = ""
    input: tuple = ()
    notify: str | None = None

    @classmethod
    def parse(cls, config, conditions):
        raw_input = config.get("input") or {}
        if not isinstance(raw_input, dict):
            raise ValidationError("'input' must be an object", details={"input": raw_input})
        return cls(
            conditions=conditions,
            agent_slug=config_str(config, "agentSlug", required=True),
            input=tuple(sorted(raw_input.items())),
            notify=config_str(config, "notify"),
        )


@action_spec("call_api")
@dataclass(frozen=True)
class CallApiAction(ActionSpec):
    url: str = ""
    method: str = "POST"
    headers: tuple = ()
    payload: tuple = ()

    @classmethod
    def parse(cls, config, conditions):
        url = config_str(config, "url", required=True)
        if not url.startswith(("http://", "https://")):
            raise ValidationError("'url' must be http(s)", details={"url": url})
        headers = config.get("headers") or {}
        payload = config.get("body") or {}
        if not isinstance(headers, dict) or not isinstance(payload, dict):
            raise ValidationError("'headers' and 'body' must be objects")
        return cls(
            conditions=conditions,
            url=url,
            method=config_str(config, "method", "POST", choices=HTTP_METHODS),
            headers=tuple(sorted(headers.items())),
            payload=tuple(sorted(payload.items())),
        )


ACTION_TYPES = frozenset(ACTION_SPECS)


def parse_action_config(action: dict) -> ActionSpec:
    """Parse one ``{type, config, conditions}`` blob, raising ValidationError."""
    if not isinstance(action, dict):
        raise ValidationError("Action must be an object", details={"action": action})
    action_type = action.get("type")
    spec_cls = ACTION_SPECS.get(action_type)
    if spec_cls is None:
        raise ValidationError(f"Unknown action type '{action_type}'", details={"type": action_type})
    config = action.get("config") or {}
    if not isinstance(config, dict):
        raise ValidationError("Action config must be an object", details={"type": action_type})
    try:
        conditions = tuple(validate_conditions(action.get("conditions")))
    except ConditionEvaluationError as exc:
        raise ValidationError(str(exc), details={"conditions": str(exc)})
    return spec_cls.parse(config, conditions)


def parse_actions(actions) -> list[ActionSpec]:
    if actions is None:
        return []
    if not isinstance(actions, list):
        raise ValidationError("actions must be a list")
    return [parse_action_config(a) for a in actions]
