"""
Value objects passed between the entity store, dispatcher and executor.

    TriggerFireRequest  an event handed to AutomationEngine.fire_trigger
    EntityChange        a mutation reported by the entity store
    ActionResult        outcome of one executed action
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class TriggerFireRequest:
    type: str
    entity_type: str
    entity_id: int | None
    organization_id: int
    field_name: str | None = None
    old_value: Any = None
    new_value: Any = None
    metadata: dict = field(default_factory=dict)
    scheduled_for: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "TriggerFireRequest":
        return cls(
            type=data["type"],
            entity_type=data["entity_type"],
            entity_id=data.get("entity_id"),
            organization_id=data["organization_id"],
            field_name=data.get("field_name"),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class EntityChange:
    """
    One observable mutation.

    kind is ``field`` for plain column changes (status included) or one of
    ``all_tasks_complete``, ``task_eligible``, ``assignment_created``,
    ``contact_added``, ``budget_crossed``.
    """

    kind: str
    entity_type: str
    entity_id: int
    organization_id: int
    field_name: str | None = None
    old_value: Any = None
    new_value: Any = None
    metadata: dict = field(default_factory=dict)


@dataclass
class ActionResult:
    action_type: str
    success: bool
    detail: dict = field(default_factory=dict)
    error: str | None = None
    skipped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScopeChain:
    """
    Where an entity sits in the hierarchy, expressed in template ids.

    workflow_ids is empty for organization-level entities (users, the
    organization itself), which only match organization-wide triggers.
    """

    entity_type: str
    entity_id: int | None
    entity_template_id: int | None = None
    assignment_id: int | None = None
    workflow_ids: set = field(default_factory=set)
    stage_template_ids: set = field(default_factory=set)
    step_template_ids: set = field(default_factory=set)
    snapshot: dict = field(default_factory=dict)

    @property
    def primary_workflow_id(self) -> int | None:
        return next(iter(sorted(self.workflow_ids)), None)
