"""
Practice Automation Engine
Task dependency graph model.

Models:
    - TaskDependency: directed edge "task depends on depends_on_task"

Edge semantics:
    finish_to_start   dependent may start once the prerequisite finishes
    start_to_start    dependent may start once the prerequisite starts
    finish_to_finish  dependent may finish once the prerequisite finishes
    start_to_finish   dependent may finish once the prerequisite starts

lag_days shifts the moment the edge releases the dependent. Non-blocking
edges are informational and never gate anything.
"""

from datetime import datetime, timezone

from sqlalchemy import select

from practice_automation.models import db
from practice_automation.models.base import OrganizationModel


# ── Constants ────────────────────────────────────────────────────────────────

DEPENDENCY_TYPES = {
    "finish_to_start", "start_to_start",
    "finish_to_finish", "start_to_finish",
}

# Edge types released when the prerequisite starts / finishes
SATISFIED_ON_START = {"start_to_start", "start_to_finish"}

# Edge types that gate starting vs. completing the dependent task
START_GATING_TYPES = {"finish_to_start", "start_to_start"}
FINISH_GATING_TYPES = {"finish_to_finish", "start_to_finish"}


# ── Cycle Detection ──────────────────────────────────────────────────────────


def validate_no_cycle(session, task_id, depends_on_task_id):
    """
    Check that adding "task_id depends on depends_on_task_id" keeps the graph acyclic.

    Iterative DFS from depends_on_task_id along its own prerequisites; a
    path back to task_id means the new edge would close a cycle.
    Returns True if safe, False if a cycle would be created.
    """
    if task_id == depends_on_task_id:
        return False

    visited = set()
    stack = [depends_on_task_id]

    while stack:
        current = stack.pop()
        if current == task_id:
            return False
        if current in visited:
            continue
        visited.add(current)

        prereqs = session.execute(
            select(TaskDependency.depends_on_task_id)
            .where(TaskDependency.task_id == current)
        ).scalars().all()
        stack.extend(prereqs)

    return True


class TaskDependency(OrganizationModel):
    """Directed edge between two tasks of the same assignment (or template)."""

    __tablename__ = "task_dependencies"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("workflow_tasks.id", ondelete="CASCADE"),
        nullable=False, index=True,
        comment="Dependent task",
    )
    depends_on_task_id = db.Column(
        db.Integer, db.ForeignKey("workflow_tasks.id", ondelete="CASCADE"),
        nullable=False, index=True,
        comment="Prerequisite task",
    )
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    dependency_type = db.Column(
        db.String(30), default="finish_to_start", nullable=False,
        comment="finish_to_start | start_to_start | finish_to_finish | start_to_finish",
    )
    lag_days = db.Column(db.Integer, default=0, nullable=False)
    is_blocking = db.Column(db.Boolean, default=True, nullable=False)
    is_satisfied = db.Column(db.Boolean, default=False, nullable=False)
    satisfied_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("task_id", "depends_on_task_id", name="uq_task_dependency"),
        db.CheckConstraint("task_id != depends_on_task_id", name="ck_task_dep_no_self_loop"),
        db.CheckConstraint(
            "dependency_type IN ('finish_to_start','start_to_start',"
            "'finish_to_finish','start_to_finish')",
            name="ck_task_dep_type",
        ),
        db.CheckConstraint("lag_days >= 0", name="ck_task_dep_lag"),
    )

    task = db.relationship("WorkflowTask", foreign_keys=[task_id], backref=db.backref(
        "prerequisites", cascade="all, delete-orphan", lazy="dynamic",
    ))
    depends_on_task = db.relationship("WorkflowTask", foreign_keys=[depends_on_task_id], backref=db.backref(
        "dependents", cascade="all, delete-orphan", lazy="dynamic",
    ))

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "task_id": self.task_id,
            "depends_on_task_id": self.depends_on_task_id,
            "assignment_id": self.assignment_id,
            "dependency_type": self.dependency_type,
            "lag_days": self.lag_days,
            "is_blocking": self.is_blocking,
            "is_satisfied": self.is_satisfied,
            "satisfied_at": self.satisfied_at.isoformat() if self.satisfied_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TaskDependency {self.task_id} ← {self.depends_on_task_id} ({self.dependency_type})>"
