"""
Practice Automation Engine
Automation models — trigger registry, event log, budget thresholds.

Models:
    - TriggerConfig:    configured rule (type + scope + config + actions)
    - TriggerEvent:     append-only audit row, one per trigger match
    - BudgetThreshold:  spend threshold on an assignment (engagement budget)

Scope of a TriggerConfig:
    organization   workflow_id IS NULL (org-wide: capacity, contacts, manual)
    workflow       workflow_id set, stage_id / step_id NULL
    stage          stage_id set (template stage)
    step           step_id set (template step)
"""

import hashlib
import json
from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from practice_automation.models import db
from practice_automation.models.base import OrganizationModel


# ── Constants ────────────────────────────────────────────────────────────────

TRIGGER_TYPES = {
    "status_change", "field_change", "due_date_approaching", "overdue",
    "task_dependency", "all_tasks_complete", "template_instantiated",
    "client_contact_added", "budget_threshold", "team_capacity",
    "time_threshold", "fiscal_deadline", "conditional_section",
    "relative_date", "integration_event",
    # original set
    "email", "form", "webhook", "schedule", "manual", "completion",
}

# Triggers that must fire at most once per (type, entity, field, new value)
IDEMPOTENT_TRIGGER_TYPES = {"all_tasks_complete", "task_dependency"}

EXECUTION_STATUSES = {"success", "failed", "partial"}

TRIGGER_SCOPES = {"organization", "workflow", "stage", "step"}


def stringify_value(value):
    """Normalise an old/new value for storage and idempotence lookups."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, sort_keys=True, default=str)


def idempotency_key(trigger_config_id, trigger_type, entity_type, entity_id, field_name, new_value):
    """Digest of the once-only tuple; unique across trigger_events."""
    raw = json.dumps([trigger_config_id, trigger_type, entity_type, entity_id,
                      field_name, stringify_value(new_value)])
    return hashlib.sha256(raw.encode()).hexdigest()


# ═════════════════════════════════════════════════════════════════════════════
# 1. TriggerConfig
# ═════════════════════════════════════════════════════════════════════════════


class TriggerConfig(OrganizationModel):
    """
    A configured automation rule.

    ``config`` holds the type-specific settings plus the optional generic
    ``conditions`` list; ``actions`` is an ordered list of
    ``{"type", "config", "conditions"}`` blobs. Both are validated into
    typed specs before they are saved.
    """

    __tablename__ = "trigger_configs"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, default="")
    trigger_type = db.Column(db.String(40), nullable=False, index=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    stage_id = db.Column(
        db.Integer, db.ForeignKey("workflow_stages.id", ondelete="CASCADE"),
        nullable=True, index=True, comment="Template stage this trigger is attached to",
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=True, index=True, comment="Template step this trigger is attached to",
    )
    config = db.Column(db.JSON, default=dict)
    actions = db.Column(db.JSON, default=list)
    is_enabled = db.Column(db.Boolean, default=True, nullable=False)
    transactional = db.Column(
        db.Boolean, default=False, nullable=False,
        comment="All-or-nothing: a failing action rolls back the others' store mutations",
    )

    # Time-based bookkeeping (schedule triggers)
    next_run_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    run_count = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "trigger_type IN ("
            + ",".join(f"'{t}'" for t in sorted(TRIGGER_TYPES))
            + ")",
            name="ck_trigger_config_type",
        ),
        db.Index("ix_trigger_configs_org_type", "organization_id", "trigger_type"),
    )

    @property
    def scope(self):
        if self.step_id:
            return "step"
        if self.stage_id:
            return "stage"
        if self.workflow_id:
            return "workflow"
        return "organization"

    def snapshot(self):
        """Immutable copy stored on each TriggerEvent."""
        return {
            "id": self.id,
            "name": self.name,
            "trigger_type": self.trigger_type,
            "scope": self.scope,
            "workflow_id": self.workflow_id,
            "stage_id": self.stage_id,
            "step_id": self.step_id,
            "config": dict(self.config or {}),
            "actions": list(self.actions or []),
            "transactional": self.transactional,
        }

    def to_dict(self):
        result = self.snapshot()
        result.update({
            "organization_id": self.organization_id,
            "is_enabled": self.is_enabled,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "run_count": self.run_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        })
        return result

    def __repr__(self):
        return f"<TriggerConfig {self.id}: {self.trigger_type} ({self.scope})>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. TriggerEvent
# ═════════════════════════════════════════════════════════════════════════════


class TriggerEvent(OrganizationModel):
    """Immutable record of one trigger fire.

    Append-only: rows are never updated. This is the audit trail behind
    the automation history view and the source for idempotence and
    repeat-interval checks. Entity references are plain integers so the
    history survives deletion of the entities it describes.
    """

    __tablename__ = "trigger_events"

    id = db.Column(db.Integer, primary_key=True)
    trigger_config_id = db.Column(db.Integer, nullable=True, index=True)
    workflow_id = db.Column(db.Integer, nullable=True)
    assignment_id = db.Column(db.Integer, nullable=True, index=True)

    trigger_type = db.Column(db.String(40), nullable=False)
    trigger_config = db.Column(db.JSON, default=dict, comment="Snapshot of the config at fire time")
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)
    field_name = db.Column(db.String(100), nullable=True)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    event_metadata = db.Column("metadata", db.JSON, default=dict)

    scheduled_for = db.Column(db.DateTime(timezone=True), nullable=True)
    fired_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    actions_executed = db.Column(db.JSON, default=list)
    execution_status = db.Column(db.String(10), nullable=False, default="success")
    execution_error = db.Column(db.Text, nullable=True)

    chain_id = db.Column(db.String(36), nullable=True, index=True,
                         comment="Shared by every fire in one cascade chain")
    cascade_depth = db.Column(db.Integer, default=0, nullable=False)
    idempotency_key = db.Column(
        db.String(64), nullable=True, unique=True,
        comment="Set on successful fires of once-only triggers; NULL otherwise",
    )

    __table_args__ = (
        db.CheckConstraint(
            "execution_status IN ('success','failed','partial')",
            name="ck_trigger_event_status",
        ),
        db.Index("ix_trigger_events_org_type_entity", "organization_id", "trigger_type", "entity_id"),
        db.Index("ix_trigger_events_org_fired", "organization_id", "fired_at"),
        db.Index("ix_trigger_events_config_entity", "trigger_config_id", "entity_type", "entity_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "trigger_config_id": self.trigger_config_id,
            "workflow_id": self.workflow_id,
            "assignment_id": self.assignment_id,
            "trigger_type": self.trigger_type,
            "trigger_config": self.trigger_config,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "metadata": self.event_metadata or {},
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "fired_at": self.fired_at.isoformat() if self.fired_at else None,
            "actions_executed": self.actions_executed or [],
            "execution_status": self.execution_status,
            "execution_error": self.execution_error,
            "chain_id": self.chain_id,
            "cascade_depth": self.cascade_depth,
        }

    def __repr__(self) -> str:
        return (
            f"<TriggerEvent {self.id}: {self.trigger_type} "
            f"{self.entity_type}={self.entity_id} [{self.execution_status}]>"
        )


@_sa_event.listens_for(TriggerEvent, "before_update")
def _block_trigger_event_update(mapper, connection, target) -> None:  # noqa: ANN001
    """Reject any ORM UPDATE of an audit row."""
    raise RuntimeError(f"TriggerEvent {target.id} is append-only and cannot be modified")


# ═════════════════════════════════════════════════════════════════════════════
# 3. BudgetThreshold
# ═════════════════════════════════════════════════════════════════════════════


class BudgetThreshold(OrganizationModel):
    """
    Spend threshold on an engagement budget.

    is_triggered flips once when current_spend crosses the threshold and is
    reset only by an explicit budget revision.
    """

    __tablename__ = "budget_thresholds"

    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=False, index=True, comment="Engagement (project) the budget belongs to",
    )
    threshold_percentage = db.Column(db.Float, nullable=False, default=80.0)
    budget_amount = db.Column(db.Float, nullable=False)
    current_spend = db.Column(db.Float, nullable=False, default=0.0)
    is_triggered = db.Column(db.Boolean, default=False, nullable=False)
    triggered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint("budget_amount > 0", name="ck_budget_amount_positive"),
        db.CheckConstraint(
            "threshold_percentage > 0 AND threshold_percentage <= 1000",
            name="ck_budget_threshold_range",
        ),
    )

    @property
    def spend_percentage(self):
        if not self.budget_amount:
            return 0.0
        return round((self.current_spend or 0.0) / self.budget_amount * 100, 2)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "assignment_id": self.assignment_id,
            "threshold_percentage": self.threshold_percentage,
            "budget_amount": self.budget_amount,
            "current_spend": self.current_spend,
            "spend_percentage": self.spend_percentage,
            "is_triggered": self.is_triggered,
            "triggered_at": self.triggered_at.isoformat() if self.triggered_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<BudgetThreshold {self.id}: {self.spend_percentage}% of {self.threshold_percentage}%>"
