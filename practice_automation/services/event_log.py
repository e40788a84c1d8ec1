"""
Event Log service — append-only TriggerEvent writes and the lookups the
dispatcher and scheduler make against them.

    record()               one row per trigger match
    record_failure()       cascade aborts (no matching trigger row exists)
    has_successful_fire()  idempotence tuple check
    fired_on_day()         same-day dedupe for date-based scans
    last_fire()            repeat-interval gating for overdue
    fired_since()          inactivity dedupe for time_threshold
    history()              events/history view

Every query is filtered by organization_id.
"""

import logging
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import func, select

from practice_automation.models import db
from practice_automation.models.automation import TriggerEvent, stringify_value
from practice_automation.utils.helpers import as_utc

logger = logging.getLogger(__name__)


def derive_status(results):
    """success when every action succeeded (or none ran), failed when none did."""
    if not results:
        return "success"
    ok = sum(1 for r in results if r.success)
    if ok == len(results):
        return "success"
    if ok == 0:
        return "failed"
    return "partial"


def record(*, request, trigger, scope, results, status, error=None,
           chain_id=None, depth=0, fired_at=None, trigger_snapshot=None,
           idempotency_key=None):
    """Append one TriggerEvent for a matched trigger. Flushes, does not commit."""
    evt = TriggerEvent(
        organization_id=request.organization_id,
        trigger_config_id=trigger.id if trigger is not None else None,
        workflow_id=(trigger.workflow_id if trigger is not None and trigger.workflow_id
                     else scope.primary_workflow_id if scope else None),
        assignment_id=scope.assignment_id if scope else None,
        trigger_type=request.type,
        trigger_config=trigger_snapshot or (trigger.snapshot() if trigger is not None else {}),
        entity_type=request.entity_type,
        entity_id=request.entity_id,
        field_name=request.field_name,
        old_value=stringify_value(request.old_value),
        new_value=stringify_value(request.new_value),
        event_metadata=dict(request.metadata or {}),
        scheduled_for=request.scheduled_for,
        fired_at=fired_at or datetime.now(timezone.utc),
        actions_executed=[r.to_dict() for r in results],
        execution_status=status,
        execution_error=error,
        chain_id=chain_id,
        cascade_depth=depth,
        idempotency_key=idempotency_key,
    )
    db.session.add(evt)
    db.session.flush()
    logger.info(
        "Trigger fired: %s on %s=%s [%s]",
        request.type, request.entity_type, request.entity_id, status,
        extra={
            "organization_id": request.organization_id,
            "trigger_type": request.type,
            "trigger_config_id": evt.trigger_config_id,
            "chain_id": chain_id,
            "cascade_depth": depth,
        },
    )
    return evt


def record_failure(*, request, error, chain_id=None, depth=0, fired_at=None, scope=None):
    """Append a failed TriggerEvent that is not tied to a trigger match."""
    return record(
        request=request, trigger=None, scope=scope, results=[],
        status="failed", error=error, chain_id=chain_id, depth=depth,
        fired_at=fired_at,
    )


def has_successful_fire(organization_id, trigger_type, entity_id, field_name,
                        new_value, trigger_config_id=None, entity_type=None):
    """Idempotence check on (type, entity, field, new value), optionally per trigger."""
    stmt = select(func.count(TriggerEvent.id)).where(
        TriggerEvent.organization_id == organization_id,
        TriggerEvent.trigger_type == trigger_type,
        TriggerEvent.entity_id == entity_id,
        TriggerEvent.execution_status == "success",
    )
    if entity_type is not None:
        stmt = stmt.where(TriggerEvent.entity_type == entity_type)
    stmt = stmt.where(
        TriggerEvent.field_name.is_(None) if field_name is None
        else TriggerEvent.field_name == field_name
    )
    value = stringify_value(new_value)
    stmt = stmt.where(
        TriggerEvent.new_value.is_(None) if value is None
        else TriggerEvent.new_value == value
    )
    if trigger_config_id is not None:
        stmt = stmt.where(TriggerEvent.trigger_config_id == trigger_config_id)
    return db.session.execute(stmt).scalar() > 0


def _pair_filter(stmt, organization_id, trigger_config_id, entity_type, entity_id):
    return stmt.where(
        TriggerEvent.organization_id == organization_id,
        TriggerEvent.trigger_config_id == trigger_config_id,
        TriggerEvent.entity_type == entity_type,
        TriggerEvent.entity_id == entity_id,
    )


def fired_on_day(organization_id, trigger_config_id, entity_type, entity_id, day):
    """True if the trigger fired for the entity on ``day`` (UTC), whatever the outcome."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1)
    stmt = _pair_filter(
        select(func.count(TriggerEvent.id)),
        organization_id, trigger_config_id, entity_type, entity_id,
    ).where(TriggerEvent.fired_at >= start, TriggerEvent.fired_at < end)
    return db.session.execute(stmt).scalar() > 0


def last_fire(organization_id, trigger_config_id, entity_type, entity_id):
    """Most recent fired_at for the trigger/entity pair, or None."""
    stmt = _pair_filter(
        select(func.max(TriggerEvent.fired_at)),
        organization_id, trigger_config_id, entity_type, entity_id,
    )
    return as_utc(db.session.execute(stmt).scalar())


def fired_since(organization_id, trigger_config_id, entity_type, entity_id, since):
    last = last_fire(organization_id, trigger_config_id, entity_type, entity_id)
    return last is not None and since is not None and last >= as_utc(since)


_HISTORY_FILTERS = ("trigger_type", "entity_type", "entity_id", "assignment_id",
                    "workflow_id", "trigger_config_id", "execution_status", "chain_id")


def history(organization_id, filters=None, limit=50, offset=0):
    """Newest-first event page. Returns (items, total)."""
    filters = filters or {}
    stmt = select(TriggerEvent).where(TriggerEvent.organization_id == organization_id)
    for key in _HISTORY_FILTERS:
        if filters.get(key) not in (None, ""):
            stmt = stmt.where(getattr(TriggerEvent, key) == filters[key])

    total = db.session.execute(
        select(func.count()).select_from(stmt.subquery())
    ).scalar()
    items = db.session.execute(
        stmt.order_by(TriggerEvent.fired_at.desc(), TriggerEvent.id.desc())
        .offset(offset).limit(limit)
    ).scalars().all()
    return items, total
