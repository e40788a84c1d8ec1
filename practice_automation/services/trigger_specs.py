"""
Typed trigger configurations.

Every TriggerConfig.config blob is parsed into one frozen dataclass per
trigger type. The registry is checked against TRIGGER_TYPES at import
time, so adding a type without a spec fails loudly instead of silently
never matching.

JSON keys are camelCase (``fromValue``, ``daysBeforeDue``); attributes
are snake_case. Every spec also carries the generic ``conditions`` list
that the condition evaluator runs after ``matches`` passes.

Scheduler-synthesised fires describe themselves through request
metadata (``daysUntilDue``, ``daysOverdue``, ``inactiveHours``, ...);
the specs compare that metadata with their own settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from apscheduler.triggers.cron import CronTrigger

from practice_automation.core.exceptions import ConditionEvaluationError, ValidationError
from practice_automation.models.automation import TRIGGER_TYPES, stringify_value
from practice_automation.models.workflow import NODE_STATUSES
from practice_automation.services.automation_events import ScopeChain, TriggerFireRequest
from practice_automation.services.condition_evaluator import validate_conditions

TRIGGER_SPECS: dict[str, type["TriggerSpec"]] = {}

ENTITY_TYPES = {"task", "step", "stage", "assignment", "workflow", "client", "user", "organization"}
ANCHOR_FIELDS = {"due_date", "start_date", "created_at"}


def trigger_spec(trigger_type: str):
    """Class decorator registering a spec for one trigger type."""
    def decorator(cls):
        cls.trigger_type = trigger_type
        TRIGGER_SPECS[trigger_type] = cls
        return cls
    return decorator


# ── Config readers ───────────────────────────────────────────────────────────


def config_int(config: dict, key: str, default: int | None = None, *, minimum: int | None = None,
         required: bool = False) -> int | None:
    raw = config.get(key)
    if raw is None:
        if required:
            raise ValidationError(f"'{key}' is required", details={key: "required"})
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be an integer", details={key: raw})
    if minimum is not None and value < minimum:
        raise ValidationError(f"'{key}' must be >= {minimum}", details={key: raw})
    return value


def config_float(config: dict, key: str, default: float | None = None, *, required: bool = False) -> float | None:
    raw = config.get(key)
    if raw is None:
        if required:
            raise ValidationError(f"'{key}' is required", details={key: "required"})
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be a number", details={key: raw})


def config_str(config: dict, key: str, default: str | None = None, *, choices=None,
         required: bool = False) -> str | None:
    raw = config.get(key)
    if raw in (None, ""):
        if required:
            raise ValidationError(f"'{key}' is required", details={key: "required"})
        return default
    value = str(raw)
    if choices is not None and value not in choices:
        raise ValidationError(
            f"'{key}' must be one of {sorted(choices)}", details={key: raw},
        )
    return value


def _meta_number(request: TriggerFireRequest, key: str) -> float | None:
    raw = request.metadata.get(key)
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _value_matches(expected: Any, actual: Any) -> bool:
    return expected is None or stringify_value(expected) == stringify_value(actual)


# ── Base ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TriggerSpec:
    trigger_type: ClassVar[str] = ""
    allows_repeat: ClassVar[bool] = False

    conditions: tuple = ()

    @classmethod
    def parse(cls, config: dict) -> "TriggerSpec":
        return cls(conditions=tuple(validate_conditions(config.get("conditions"))))

    def matches(self, request: TriggerFireRequest, trigger, scope: ScopeChain) -> bool:
        return True

    def repeats(self) -> bool:
        return self.allows_repeat


@dataclass(frozen=True)
class _ValueChangeSpec(TriggerSpec):
    from_value: Any = None
    to_value: Any = None
    any_change: bool = False
    entity_type: str | None = None

    @classmethod
    def _value_kwargs(cls, config: dict) -> dict:
        return {
            "conditions": tuple(validate_conditions(config.get("conditions"))),
            "from_value": config.get("fromValue"),
            "to_value": config.get("toValue"),
            "any_change": bool(config.get("anyChange", False)),
            "entity_type": config_str(config, "entityType", choices=ENTITY_TYPES),
        }

    def _values_match(self, request: TriggerFireRequest) -> bool:
        if self.entity_type and request.entity_type != self.entity_type:
            return False
        if self.any_change:
            return stringify_value(request.old_value) != stringify_value(request.new_value)
        return (_value_matches(self.from_value, request.old_value)
                and _value_matches(self.to_value, request.new_value))


# ── Entity change triggers ───────────────────────────────────────────────────


@trigger_spec("status_change")
@dataclass(frozen=True)
class StatusChangeTrigger(_ValueChangeSpec):

    @classmethod
    def parse(cls, config):
        kwargs = cls._value_kwargs(config)
        for key in ("from_value", "to_value"):
            if kwargs[key] is not None and kwargs[key] not in NODE_STATUSES:
                raise ValidationError(f"Unknown status '{kwargs[key]}'", details={key: kwargs[key]})
        return cls(**kwargs)

    def matches(self, request, trigger, scope):
        return request.field_name in (None, "status") and self._values_match(request)


@trigger_spec("field_change")
@dataclass(frozen=True)
class FieldChangeTrigger(_ValueChangeSpec):
    field_name: str = ""

    @classmethod
    def parse(cls, config):
        return cls(field_name=config_str(config, "fieldName", required=True), **cls._value_kwargs(config))

    def matches(self, request, trigger, scope):
        return request.field_name == self.field_name and self._values_match(request)


@trigger_spec("completion")
@dataclass(frozen=True)
class CompletionTrigger(TriggerSpec):
    entity_type: str | None = None

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            entity_type=config_str(config, "entityType", choices=ENTITY_TYPES),
        )

    def matches(self, request, trigger, scope):
        if self.entity_type and request.entity_type != self.entity_type:
            return False
        return stringify_value(request.new_value) == "completed"


@trigger_spec("all_tasks_complete")
@dataclass(frozen=True)
class AllTasksCompleteTrigger(TriggerSpec):
    """Matches only the completed node that the trigger itself is attached to."""

    def matches(self, request, trigger, scope):
        if trigger.step_id:
            return request.entity_type == "step" and scope.entity_template_id == trigger.step_id
        if trigger.stage_id:
            return request.entity_type == "stage" and scope.entity_template_id == trigger.stage_id
        if trigger.workflow_id:
            return request.entity_type == "assignment"
        return True


@trigger_spec("task_dependency")
@dataclass(frozen=True)
class TaskDependencyTrigger(TriggerSpec):
    dependency_type: str | None = None

    @classmethod
    def parse(cls, config):
        from practice_automation.models.dependency import DEPENDENCY_TYPES
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            dependency_type=config_str(config, "dependencyType", choices=DEPENDENCY_TYPES),
        )

    def matches(self, request, trigger, scope):
        if request.entity_type != "task" or stringify_value(request.new_value) != "eligible":
            return False
        if self.dependency_type:
            return self.dependency_type in (request.metadata.get("dependencyTypes") or [])
        return True


@trigger_spec("template_instantiated")
@dataclass(frozen=True)
class TemplateInstantiatedTrigger(TriggerSpec):
    template_id: int | None = None

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            template_id=config_int(config, "templateId"),
        )

    def matches(self, request, trigger, scope):
        if request.entity_type != "assignment":
            return False
        return self.template_id is None or request.metadata.get("templateId") == self.template_id


@trigger_spec("client_contact_added")
@dataclass(frozen=True)
class ClientContactAddedTrigger(TriggerSpec):
    contact_role: str | None = None

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            contact_role=config_str(config, "contactRole"),
        )

    def matches(self, request, trigger, scope):
        return self.contact_role is None or request.metadata.get("contactRole") == self.contact_role


@trigger_spec("budget_threshold")
@dataclass(frozen=True)
class BudgetThresholdTrigger(TriggerSpec):
    threshold_percentage: float | None = None

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            threshold_percentage=config_float(config, "thresholdPercentage"),
        )

    def matches(self, request, trigger, scope):
        spent = _meta_number(request, "spendPercentage")
        if spent is None:
            return False
        return self.threshold_percentage is None or spent >= self.threshold_percentage


@trigger_spec("conditional_section")
@dataclass(frozen=True)
class ConditionalSectionTrigger(TriggerSpec):
    section_id: str | None = None

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            section_id=config_str(config, "sectionId"),
        )

    def matches(self, request, trigger, scope):
        return self.section_id is None or str(request.metadata.get("sectionId")) == self.section_id


# ── Time-based triggers (synthesised by the scheduler) ───────────────────────


@trigger_spec("due_date_approaching")
@dataclass(frozen=True)
class DueDateApproachingTrigger(TriggerSpec):
    days_before_due: int = 3
    applies_to: str = "assignment"

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            days_before_due=config_int(config, "daysBeforeDue", 3, minimum=0),
            applies_to=config_str(config, "appliesTo", "assignment", choices={"assignment", "task"}),
        )

    def matches(self, request, trigger, scope):
        return (request.entity_type == self.applies_to
                and _meta_number(request, "daysUntilDue") == self.days_before_due)


@trigger_spec("overdue")
@dataclass(frozen=True)
class OverdueTrigger(TriggerSpec):
    grace_period_days: int = 0
    repeat_every_days: int | None = None
    applies_to: str = "assignment"

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            grace_period_days=config_int(config, "gracePeriodDays", 0, minimum=0),
            repeat_every_days=config_int(config, "repeatEveryDays", minimum=1),
            applies_to=config_str(config, "appliesTo", "assignment", choices={"assignment", "task"}),
        )

    def repeats(self):
        return self.repeat_every_days is not None

    def matches(self, request, trigger, scope):
        overdue = _meta_number(request, "daysOverdue")
        return (request.entity_type == self.applies_to
                and overdue is not None and overdue >= self.grace_period_days)


@trigger_spec("time_threshold")
@dataclass(frozen=True)
class TimeThresholdTrigger(TriggerSpec):
    inactivity_hours: float = 48.0
    watch_statuses: tuple = ("in_progress",)
    applies_to: str = "task"

    @classmethod
    def parse(cls, config):
        statuses = config.get("watchStatuses") or ["in_progress"]
        if not isinstance(statuses, list) or not set(statuses) <= NODE_STATUSES:
            raise ValidationError("watchStatuses must be a list of statuses", details={"watchStatuses": statuses})
        hours = config_float(config, "inactivityHours", required=True)
        if hours <= 0:
            raise ValidationError("inactivityHours must be positive", details={"inactivityHours": hours})
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            inactivity_hours=hours,
            watch_statuses=tuple(statuses),
            applies_to=config_str(config, "appliesTo", "task", choices={"assignment", "task"}),
        )

    def matches(self, request, trigger, scope):
        inactive = _meta_number(request, "inactiveHours")
        return (request.entity_type == self.applies_to
                and inactive is not None and inactive >= self.inactivity_hours
                and request.metadata.get("status") in self.watch_statuses)


@trigger_spec("relative_date")
@dataclass(frozen=True)
class RelativeDateTrigger(TriggerSpec):
    anchor_field: str = "due_date"
    offset_days: int = 0
    applies_to: str = "assignment"

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            anchor_field=config_str(config, "anchorField", "due_date", choices=ANCHOR_FIELDS),
            offset_days=config_int(config, "offsetDays", 0),
            applies_to=config_str(config, "appliesTo", "assignment", choices={"assignment", "task"}),
        )

    def matches(self, request, trigger, scope):
        return (request.entity_type == self.applies_to
                and request.metadata.get("anchorField") == self.anchor_field
                and _meta_number(request, "offsetDays") == self.offset_days)


@trigger_spec("fiscal_deadline")
@dataclass(frozen=True)
class FiscalDeadlineTrigger(TriggerSpec):
    deadline_type: str = "custom"
    month: int = 4
    day: int = 15
    days_before: int = 0

    @classmethod
    def parse(cls, config):
        month = config_int(config, "month", required=True, minimum=1)
        day = config_int(config, "day", required=True, minimum=1)
        if month > 12 or day > 31:
            raise ValidationError("month/day out of range", details={"month": month, "day": day})
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            deadline_type=config_str(config, "deadlineType", "custom"),
            month=month,
            day=day,
            days_before=config_int(config, "daysBefore", 0, minimum=0),
        )

    def matches(self, request, trigger, scope):
        return (request.metadata.get("deadlineType") == self.deadline_type
                and _meta_number(request, "daysUntilDeadline") == self.days_before)


@trigger_spec("team_capacity")
@dataclass(frozen=True)
class TeamCapacityTrigger(TriggerSpec):
    capacity_percentage: float = 100.0
    user_id: int | None = None

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            capacity_percentage=config_float(config, "capacityPercentage", 100.0),
            user_id=config_int(config, "userId"),
        )

    def matches(self, request, trigger, scope):
        if request.entity_type != "user":
            return False
        if self.user_id is not None and request.entity_id != self.user_id:
            return False
        utilization = _meta_number(request, "utilization")
        return utilization is not None and utilization >= self.capacity_percentage


@trigger_spec("schedule")
@dataclass(frozen=True)
class ScheduleTrigger(TriggerSpec):
    """Cron (``schedule_type = recurring``) or single run at ``runAt``."""

    schedule_type: str = "recurring"
    cron: str | None = None
    timezone: str = "UTC"
    run_at: str | None = None

    @classmethod
    def parse(cls, config):
        schedule_type = config_str(config, "scheduleType", "recurring", choices={"recurring", "one_time"})
        cron = config_str(config, "cron")
        tz = config_str(config, "timezone", "UTC")
        if schedule_type == "recurring":
            if not cron:
                raise ValidationError("'cron' is required for recurring schedules", details={"cron": "required"})
            try:
                CronTrigger.from_crontab(cron, timezone=tz)
            except (ValueError, LookupError) as exc:
                raise ValidationError(f"Invalid cron expression: {exc}", details={"cron": cron})
        run_at = config_str(config, "runAt", required=schedule_type == "one_time")
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            schedule_type=schedule_type,
            cron=cron,
            timezone=tz,
            run_at=run_at,
        )

    def cron_trigger(self) -> CronTrigger:
        return CronTrigger.from_crontab(self.cron, timezone=self.timezone)

    def matches(self, request, trigger, scope):
        return request.metadata.get("triggerConfigId") == trigger.id


# ── Externally originated triggers ───────────────────────────────────────────


@trigger_spec("manual")
@dataclass(frozen=True)
class ManualTrigger(TriggerSpec):
    pass


@trigger_spec("integration_event")
@dataclass(frozen=True)
class IntegrationEventTrigger(TriggerSpec):
    provider: str | None = None
    event_name: str | None = None

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            provider=config_str(config, "provider"),
            event_name=config_str(config, "eventName"),
        )

    def matches(self, request, trigger, scope):
        if self.provider and request.metadata.get("provider") != self.provider:
            return False
        return not self.event_name or request.metadata.get("eventName") == self.event_name


@trigger_spec("email")
@dataclass(frozen=True)
class EmailTrigger(TriggerSpec):
    from_contains: str | None = None
    subject_contains: str | None = None

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            from_contains=config_str(config, "fromContains"),
            subject_contains=config_str(config, "subjectContains"),
        )

    def matches(self, request, trigger, scope):
        sender = str(request.metadata.get("from") or "").lower()
        subject = str(request.metadata.get("subject") or "").lower()
        if self.from_contains and self.from_contains.lower() not in sender:
            return False
        return not self.subject_contains or self.subject_contains.lower() in subject


@trigger_spec("form")
@dataclass(frozen=True)
class FormTrigger(TriggerSpec):
    form_template_id: int | None = None

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            form_template_id=config_int(config, "formTemplateId"),
        )

    def matches(self, request, trigger, scope):
        return (self.form_template_id is None
                or request.metadata.get("formTemplateId") == self.form_template_id)


@trigger_spec("webhook")
@dataclass(frozen=True)
class WebhookTrigger(TriggerSpec):
    webhook_key: str = ""

    @classmethod
    def parse(cls, config):
        return cls(
            conditions=tuple(validate_conditions(config.get("conditions"))),
            webhook_key=config_str(config, "webhookKey", required=True),
        )

    def matches(self, request, trigger, scope):
        return request.metadata.get("webhookKey") == self.webhook_key


# ── Registry ─────────────────────────────────────────────────────────────────

_unregistered = TRIGGER_TYPES - TRIGGER_SPECS.keys()
if _unregistered:
    raise RuntimeError(f"Trigger types without a spec: {sorted(_unregistered)}")


def parse_trigger_config(trigger_type: str, config: dict | None) -> TriggerSpec:
    """Parse a raw config blob into its typed spec, raising ValidationError."""
    spec_cls = TRIGGER_SPECS.get(trigger_type)
    if spec_cls is None:
        raise ValidationError(f"Unknown trigger type '{trigger_type}'", details={"trigger_type": trigger_type})
    if config is not None and not isinstance(config, dict):
        raise ValidationError("Trigger config must be an object")
    try:
        return spec_cls.parse(config or {})
    except ConditionEvaluationError as exc:
        raise ValidationError(str(exc), details={"conditions": str(exc)})
