"""
Practice Automation Engine
Workflow hierarchy models.

Models:
    - Workflow:       reusable template (e.g. "1040 Tax Return")
    - WorkflowStage:  ordered stage of a workflow or of an assignment
    - WorkflowStep:   ordered step within a stage
    - WorkflowTask:   leaf unit of work within a step
    - Assignment:     per-client instantiation of a workflow

Architecture:
    Workflow ──1:N──▶ WorkflowStage ──1:N──▶ WorkflowStep ──1:N──▶ WorkflowTask
    Workflow ──1:N──▶ Assignment ──1:N──▶ WorkflowStage (cloned tree)

    Template rows have assignment_id IS NULL. Instantiation deep-copies the
    template tree into rows carrying assignment_id, and each clone keeps
    source_id pointing at the template node it was copied from, so edits
    to the template never reach in-flight work.

Lifecycle states (all four levels):
    not_started → in_progress → completed  |  * → blocked  |  completed → in_progress
"""

from datetime import datetime, timezone

from practice_automation.models import db
from practice_automation.models.base import OrganizationModel


# ── Constants ────────────────────────────────────────────────────────────────

NODE_STATUSES = {"not_started", "in_progress", "completed", "blocked"}

ASSIGNMENT_PRIORITIES = {"low", "normal", "high", "urgent"}

NODE_TRANSITIONS = {
    "not_started": ["in_progress", "blocked", "completed"],
    "in_progress": ["completed", "blocked", "not_started"],
    "blocked":     ["in_progress", "not_started"],
    "completed":   ["in_progress"],  # reopen
}

_STATUS_CHECK = "status IN ('not_started','in_progress','completed','blocked')"


def validate_node_transition(old_status, new_status):
    """Return True if a Stage/Step/Task/Assignment status transition is valid."""
    return new_status in NODE_TRANSITIONS.get(old_status, [])


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. Workflow
# ═════════════════════════════════════════════════════════════════════════════


class Workflow(OrganizationModel):
    """Reusable workflow template owned by an organization."""

    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(50), default="general",
                         comment="tax | bookkeeping | payroll | advisory | general")
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    template_stages = db.relationship(
        "WorkflowStage",
        primaryjoin="and_(Workflow.id == WorkflowStage.workflow_id, "
                    "WorkflowStage.assignment_id.is_(None))",
        order_by="WorkflowStage.position",
        viewonly=True,
    )
    assignments = db.relationship("Assignment", backref="workflow", lazy="dynamic")

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            result["stages"] = [s.to_dict(include_children=True) for s in self.template_stages]
        return result

    def __repr__(self):
        return f"<Workflow {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. WorkflowStage
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowStage(OrganizationModel):
    __tablename__ = "workflow_stages"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=True, index=True,
        comment="NULL for template rows; set on the cloned tree of an assignment",
    )
    source_id = db.Column(
        db.Integer, db.ForeignKey("workflow_stages.id", ondelete="SET NULL"),
        nullable=True, comment="Template stage this clone was taken from",
    )
    position = db.Column(db.Integer, default=0, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    auto_progress = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(db.String(20), default="not_started", nullable=False)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(_STATUS_CHECK, name="ck_workflow_stage_status"),
        db.Index("ix_workflow_stages_org_updated", "organization_id", "updated_at"),
    )

    workflow = db.relationship("Workflow", foreign_keys=[workflow_id])
    steps = db.relationship(
        "WorkflowStep", backref="stage", order_by="WorkflowStep.position",
        cascade="all, delete-orphan",
    )

    @property
    def template_id(self):
        return self.source_id or self.id

    def iter_tasks(self):
        for step in self.steps:
            yield from step.tasks

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "organization_id": self.organization_id,
            "workflow_id": self.workflow_id,
            "assignment_id": self.assignment_id,
            "source_id": self.source_id,
            "position": self.position,
            "name": self.name,
            "description": self.description,
            "auto_progress": self.auto_progress,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            result["steps"] = [s.to_dict(include_children=True) for s in self.steps]
        return result

    def __repr__(self):
        return f"<WorkflowStage {self.id}: {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. WorkflowStep
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowStep(OrganizationModel):
    __tablename__ = "workflow_steps"

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer, db.ForeignKey("workflow_stages.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    source_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"),
        nullable=True,
    )
    position = db.Column(db.Integer, default=0, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    auto_progress = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(db.String(20), default="not_started", nullable=False)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(_STATUS_CHECK, name="ck_workflow_step_status"),
    )

    tasks = db.relationship(
        "WorkflowTask", backref="step", order_by="WorkflowTask.position",
        cascade="all, delete-orphan",
    )

    @property
    def template_id(self):
        return self.source_id or self.id

    def completion_ratio(self):
        if not self.tasks:
            return 1.0 if self.status == "completed" else 0.0
        done = sum(1 for t in self.tasks if t.status == "completed")
        return done / len(self.tasks)

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "organization_id": self.organization_id,
            "stage_id": self.stage_id,
            "assignment_id": self.assignment_id,
            "source_id": self.source_id,
            "position": self.position,
            "name": self.name,
            "description": self.description,
            "auto_progress": self.auto_progress,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            result["tasks"] = [t.to_dict() for t in self.tasks]
        return result

    def __repr__(self):
        return f"<WorkflowStep {self.id}: {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. WorkflowTask
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTask(OrganizationModel):
    """
    Leaf unit of work.

    eligible_at is stamped by the dependency resolver once every blocking
    start-gating dependency is satisfied (latest satisfied_at + lag).
    auto_start tasks are moved to in_progress when that moment arrives.
    """

    __tablename__ = "workflow_tasks"

    id = db.Column(db.Integer, primary_key=True)
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    source_id = db.Column(
        db.Integer, db.ForeignKey("workflow_tasks.id", ondelete="SET NULL"),
        nullable=True,
    )
    position = db.Column(db.Integer, default=0, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    priority = db.Column(db.String(10), default="normal")
    auto_progress = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(db.String(20), default="not_started", nullable=False)
    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    due_date = db.Column(db.Date, nullable=True)

    # Dependency gating
    auto_start = db.Column(
        db.Boolean, default=False, nullable=False,
        comment="Start automatically once dependencies release the task",
    )
    eligible_at = db.Column(db.DateTime(timezone=True), nullable=True)
    eligibility_released_at = db.Column(db.DateTime(timezone=True), nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(_STATUS_CHECK, name="ck_workflow_task_status"),
        db.Index("ix_workflow_tasks_org_updated", "organization_id", "updated_at"),
        db.Index("ix_workflow_tasks_org_eligible", "organization_id", "eligible_at"),
    )

    assignee = db.relationship("User", foreign_keys=[assigned_to_id])

    @property
    def template_id(self):
        return self.source_id or self.id

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "step_id": self.step_id,
            "assignment_id": self.assignment_id,
            "source_id": self.source_id,
            "position": self.position,
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "auto_progress": self.auto_progress,
            "status": self.status,
            "assigned_to_id": self.assigned_to_id,
            "due_date": _iso(self.due_date),
            "auto_start": self.auto_start,
            "eligible_at": _iso(self.eligible_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WorkflowTask {self.id}: {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. Assignment
# ═════════════════════════════════════════════════════════════════════════════


class Assignment(OrganizationModel):
    """
    Per-client instantiation of a Workflow.

    progress is derived on read from the cloned tree: completed-task ratio
    per step, averaged per stage, averaged across stages.
    """

    __tablename__ = "assignments"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    priority = db.Column(db.String(10), default="normal",
                         comment="low | normal | high | urgent")
    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    status = db.Column(db.String(20), default="not_started", nullable=False)
    tags = db.Column(db.JSON, default=list)
    start_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(_STATUS_CHECK, name="ck_assignment_status"),
        db.CheckConstraint(
            "priority IN ('low','normal','high','urgent')",
            name="ck_assignment_priority",
        ),
        db.Index("ix_assignments_org_due", "organization_id", "due_date"),
        db.Index("ix_assignments_org_updated", "organization_id", "updated_at"),
    )

    stages = db.relationship(
        "WorkflowStage",
        foreign_keys="WorkflowStage.assignment_id",
        backref="assignment",
        order_by="WorkflowStage.position",
        cascade="all, delete-orphan",
    )
    client = db.relationship("Client", foreign_keys=[client_id])
    assignee = db.relationship("User", foreign_keys=[assigned_to_id])

    @property
    def progress(self):
        if not self.stages:
            return 100.0 if self.status == "completed" else 0.0
        stage_ratios = []
        for stage in self.stages:
            if stage.steps:
                stage_ratios.append(
                    sum(step.completion_ratio() for step in stage.steps) / len(stage.steps)
                )
            else:
                stage_ratios.append(1.0 if stage.status == "completed" else 0.0)
        return round(sum(stage_ratios) / len(stage_ratios) * 100, 1)

    def iter_tasks(self):
        for stage in self.stages:
            yield from stage.iter_tasks()

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "organization_id": self.organization_id,
            "workflow_id": self.workflow_id,
            "client_id": self.client_id,
            "name": self.name,
            "priority": self.priority,
            "assigned_to_id": self.assigned_to_id,
            "status": self.status,
            "tags": list(self.tags or []),
            "progress": self.progress,
            "start_date": _iso(self.start_date),
            "due_date": _iso(self.due_date),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            result["stages"] = [s.to_dict(include_children=True) for s in self.stages]
        return result

    def __repr__(self):
        return f"<Assignment {self.id}: {self.name} [{self.status}]>"
