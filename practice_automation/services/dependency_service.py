"""
Dependency Graph Resolver — Service Layer.

Business logic for:
    - Edge insertion:      scoping, same-assignment check, duplicate and cycle guards
    - Satisfaction:        on_task_started / on_task_completed mark edges satisfied
                           and return the dependents that became eligible right now
    - Eligibility:         eligible_at = max(satisfied_at + lag_days) over blocking
                           start-gating edges; future releases are picked up by
                           release_due_eligibility on the scheduler
    - Auto-start:          compare-and-swap so only one racer moves the task
    - Gating guards:       assert_can_start / assert_can_finish for manual transitions
    - Critical path:       longest finish_to_start chain (Kahn)

Satisfaction and release run inside the caller's transaction: the
dependency rows are read FOR UPDATE, so two completions racing on the
same dependent serialize on the row lock and the release CAS admits one.
"""

import logging
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from practice_automation.core.exceptions import (
    ConflictError,
    CycleError,
    NotFoundError,
    ValidationError,
)
from practice_automation.models import db
from practice_automation.models.dependency import (
    DEPENDENCY_TYPES,
    FINISH_GATING_TYPES,
    SATISFIED_ON_START,
    START_GATING_TYPES,
    TaskDependency,
    validate_no_cycle,
)
from practice_automation.models.workflow import WorkflowTask
from practice_automation.utils.helpers import as_utc

logger = logging.getLogger(__name__)


def _now(now):
    return as_utc(now) if now else datetime.now(timezone.utc)


def _get_task(organization_id, task_id):
    task = WorkflowTask.get_scoped(organization_id, task_id)
    if task is None:
        raise NotFoundError(resource="WorkflowTask", resource_id=task_id,
                            organization_id=organization_id)
    return task


# ── Edge management ──────────────────────────────────────────────────────────


def add_dependency(
    organization_id: int,
    task_id: int,
    depends_on_task_id: int,
    dependency_type: str = "finish_to_start",
    lag_days: int = 0,
    *,
    is_blocking: bool = True,
    now: datetime | None = None,
) -> TaskDependency:
    """
    Add "task_id depends on depends_on_task_id".

    Raises:
        NotFoundError: either task is missing or belongs to another organization.
        ValidationError: bad type/lag, self edge, or tasks in different assignments.
        ConflictError: the edge already exists.
        CycleError: the edge would close a cycle. Nothing is persisted.
    """
    if dependency_type not in DEPENDENCY_TYPES:
        raise ValidationError(
            f"Invalid dependency_type: {dependency_type}",
            details={"dependency_type": sorted(DEPENDENCY_TYPES)},
        )
    try:
        lag_days = int(lag_days or 0)
    except (TypeError, ValueError):
        raise ValidationError("lag_days must be an integer", details={"lag_days": lag_days})
    if lag_days < 0:
        raise ValidationError("lag_days must be >= 0", details={"lag_days": lag_days})
    if task_id == depends_on_task_id:
        raise ValidationError("A task cannot depend on itself")

    task = _get_task(organization_id, task_id)
    prereq = _get_task(organization_id, depends_on_task_id)

    if task.assignment_id != prereq.assignment_id:
        raise ValidationError("Tasks must belong to the same assignment")
    if task.assignment_id is None and task.step.stage.workflow_id != prereq.step.stage.workflow_id:
        raise ValidationError("Template tasks must belong to the same workflow")

    existing = db.session.execute(
        select(TaskDependency.id).where(
            TaskDependency.task_id == task_id,
            TaskDependency.depends_on_task_id == depends_on_task_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("TaskDependency", "task_id/depends_on_task_id",
                            f"{task_id}/{depends_on_task_id}")

    if not validate_no_cycle(db.session, task_id, depends_on_task_id):
        raise CycleError(task_id=task_id, depends_on_task_id=depends_on_task_id)

    dep = TaskDependency(
        organization_id=organization_id,
        task_id=task_id,
        depends_on_task_id=depends_on_task_id,
        assignment_id=task.assignment_id,
        dependency_type=dependency_type,
        lag_days=lag_days,
        is_blocking=bool(is_blocking),
    )

    # An edge onto work that already happened is born satisfied
    if task.assignment_id is not None:
        if prereq.status == "completed":
            dep.is_satisfied = True
            dep.satisfied_at = as_utc(prereq.completed_at) or _now(now)
        elif dependency_type in SATISFIED_ON_START and prereq.started_at is not None:
            dep.is_satisfied = True
            dep.satisfied_at = as_utc(prereq.started_at)

    db.session.add(dep)
    db.session.flush()
    if task.assignment_id is not None:
        task.eligible_at = compute_eligible_at(task)
    db.session.commit()
    logger.info(
        "Dependency added: task %s depends on %s (%s, lag %sd)",
        task_id, depends_on_task_id, dependency_type, lag_days,
        extra={"organization_id": organization_id},
    )
    return dep


def remove_dependency(organization_id: int, dependency_id: int) -> None:
    dep = TaskDependency.get_scoped(organization_id, dependency_id)
    if dep is None:
        raise NotFoundError(resource="TaskDependency", resource_id=dependency_id,
                            organization_id=organization_id)
    task = dep.task
    db.session.delete(dep)
    db.session.flush()
    if task.assignment_id is not None:
        task.eligible_at = compute_eligible_at(task)
    db.session.commit()


def list_dependencies(organization_id: int, task_id: int) -> dict:
    """Both directions of the task's edges."""
    task = _get_task(organization_id, task_id)
    prereqs = db.session.execute(
        select(TaskDependency).where(
            TaskDependency.organization_id == organization_id,
            TaskDependency.task_id == task.id,
        ).order_by(TaskDependency.id)
    ).scalars().all()
    dependents = db.session.execute(
        select(TaskDependency).where(
            TaskDependency.organization_id == organization_id,
            TaskDependency.depends_on_task_id == task.id,
        ).order_by(TaskDependency.id)
    ).scalars().all()
    return {
        "task_id": task.id,
        "prerequisites": [d.to_dict() for d in prereqs],
        "dependents": [d.to_dict() for d in dependents],
    }


# ── Eligibility ──────────────────────────────────────────────────────────────


def _blocking_edges(task, types):
    return db.session.execute(
        select(TaskDependency).where(
            TaskDependency.organization_id == task.organization_id,
            TaskDependency.task_id == task.id,
            TaskDependency.is_blocking.is_(True),
            TaskDependency.dependency_type.in_(types),
        )
    ).scalars().all()


def compute_eligible_at(task) -> datetime | None:
    """
    Moment the task may start, or None.

    None either because nothing gates the task or because a blocking
    start-gating edge is still unsatisfied; assert_can_start tells the two
    apart.
    """
    edges = _blocking_edges(task, START_GATING_TYPES)
    if not edges or any(not e.is_satisfied for e in edges):
        return None
    return max(as_utc(e.satisfied_at) + timedelta(days=e.lag_days or 0) for e in edges)


def _release(task, now):
    """CAS on eligibility_released_at so a dependent is released exactly once."""
    result = db.session.execute(
        update(WorkflowTask)
        .where(
            WorkflowTask.id == task.id,
            WorkflowTask.organization_id == task.organization_id,
            WorkflowTask.status == "not_started",
            WorkflowTask.eligibility_released_at.is_(None),
        )
        .values(eligibility_released_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.session.refresh(task)
        return True
    return False


def _satisfy(task, types, now):
    deps = db.session.execute(
        select(TaskDependency)
        .where(
            TaskDependency.organization_id == task.organization_id,
            TaskDependency.depends_on_task_id == task.id,
            TaskDependency.is_satisfied.is_(False),
            TaskDependency.dependency_type.in_(types),
        )
        .order_by(TaskDependency.task_id)
        .with_for_update()
    ).scalars().all()
    if not deps:
        return []

    dependent_ids = []
    for dep in deps:
        dep.is_satisfied = True
        dep.satisfied_at = now
        if dep.task_id not in dependent_ids:
            dependent_ids.append(dep.task_id)
    db.session.flush()

    released = []
    for dependent_id in dependent_ids:
        dependent = db.session.execute(
            select(WorkflowTask)
            .where(WorkflowTask.id == dependent_id,
                   WorkflowTask.organization_id == task.organization_id)
            .with_for_update()
        ).scalar_one()
        dependent.eligible_at = compute_eligible_at(dependent)
        db.session.flush()
        eligible_at = as_utc(dependent.eligible_at)
        if eligible_at is not None and eligible_at <= now and _release(dependent, now):
            released.append(dependent)
        elif eligible_at is not None and eligible_at > now:
            logger.info(
                "Task %s eligible at %s (lag pending)", dependent.id, eligible_at.isoformat(),
                extra={"organization_id": task.organization_id},
            )
    return released


def on_task_started(task, now=None) -> list:
    """Satisfy start_to_start / start_to_finish edges out of ``task``."""
    return _satisfy(task, SATISFIED_ON_START, _now(now))


def on_task_completed(task, now=None) -> list:
    """Satisfy every remaining edge out of ``task``; returns tasks eligible now."""
    return _satisfy(task, DEPENDENCY_TYPES, _now(now))


def release_due_eligibility(now=None, *, organization_id=None, limit=500) -> list:
    """Release tasks whose lag has elapsed since the last check."""
    now = _now(now)
    stmt = (
        select(WorkflowTask)
        .where(
            WorkflowTask.eligible_at.isnot(None),
            WorkflowTask.eligible_at <= now,
            WorkflowTask.eligibility_released_at.is_(None),
            WorkflowTask.status == "not_started",
            WorkflowTask.assignment_id.isnot(None),
        )
        .order_by(WorkflowTask.organization_id, WorkflowTask.id)
        .limit(limit)
    )
    if organization_id is not None:
        stmt = stmt.where(WorkflowTask.organization_id == organization_id)
    candidates = db.session.execute(stmt).scalars().all()
    return [t for t in candidates if _release(t, now)]


def dependency_types_for(task) -> list:
    """Types of the blocking start-gating edges that released ``task``."""
    return sorted({e.dependency_type for e in _blocking_edges(task, START_GATING_TYPES)})


def try_auto_start(task, now=None) -> bool:
    """
    Move an auto_start task to in_progress.

    Compare-and-swap on status: of two concurrent callers exactly one sees
    rowcount == 1. The caller owns the rollups that follow a start.
    """
    now = _now(now)
    result = db.session.execute(
        update(WorkflowTask)
        .where(
            WorkflowTask.id == task.id,
            WorkflowTask.organization_id == task.organization_id,
            WorkflowTask.status == "not_started",
            WorkflowTask.auto_start.is_(True),
        )
        .values(status="in_progress", started_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.session.refresh(task)
    logger.info("Task %s auto-started", task.id,
                extra={"organization_id": task.organization_id})
    return True


# ── Gating guards ────────────────────────────────────────────────────────────


def assert_can_start(task, now=None) -> None:
    now = _now(now)
    for edge in _blocking_edges(task, START_GATING_TYPES):
        if not edge.is_satisfied:
            raise ValidationError(
                f"Task {task.id} is blocked by task {edge.depends_on_task_id} "
                f"({edge.dependency_type})",
                details={"dependency_id": edge.id, "depends_on_task_id": edge.depends_on_task_id},
            )
    eligible_at = as_utc(task.eligible_at)
    if eligible_at is not None and eligible_at > now:
        raise ValidationError(
            f"Task {task.id} may not start before {eligible_at.isoformat()}",
            details={"eligible_at": eligible_at.isoformat()},
        )


def assert_can_finish(task) -> None:
    for edge in _blocking_edges(task, FINISH_GATING_TYPES):
        if not edge.is_satisfied:
            raise ValidationError(
                f"Task {task.id} cannot finish before task {edge.depends_on_task_id} "
                f"({edge.dependency_type})",
                details={"dependency_id": edge.id, "depends_on_task_id": edge.depends_on_task_id},
            )


# ── Critical path ────────────────────────────────────────────────────────────


def critical_path(organization_id: int, assignment_id: int) -> dict:
    """
    Longest finish_to_start chain through the assignment's tasks.

    Every task weighs one day plus the lag on the edge leading into it.
    """
    tasks = db.session.execute(
        select(WorkflowTask.id).where(
            WorkflowTask.organization_id == organization_id,
            WorkflowTask.assignment_id == assignment_id,
        )
    ).scalars().all()
    if not tasks:
        return {"assignment_id": assignment_id, "task_ids": [], "length_days": 0}

    edges = db.session.execute(
        select(TaskDependency).where(
            TaskDependency.organization_id == organization_id,
            TaskDependency.assignment_id == assignment_id,
            TaskDependency.dependency_type == "finish_to_start",
        )
    ).scalars().all()

    successors = defaultdict(list)
    indegree = {t: 0 for t in tasks}
    for e in edges:
        successors[e.depends_on_task_id].append((e.task_id, e.lag_days or 0))
        indegree[e.task_id] = indegree.get(e.task_id, 0) + 1

    dist = {t: 1 for t in tasks}
    prev = {}
    queue = deque(sorted(t for t, d in indegree.items() if d == 0))
    while queue:
        current = queue.popleft()
        for nxt, lag in successors[current]:
            candidate = dist[current] + lag + 1
            if candidate > dist.get(nxt, 0):
                dist[nxt] = candidate
                prev[nxt] = current
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    end = max(sorted(dist), key=lambda t: dist[t])
    path = [end]
    while path[-1] in prev:
        path.append(prev[path[-1]])
    path.reverse()
    return {"assignment_id": assignment_id, "task_ids": path, "length_days": dist[end]}
