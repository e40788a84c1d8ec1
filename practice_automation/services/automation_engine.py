"""
Automation Engine — Trigger Registry & Dispatcher.

One AutomationEngine is built per process by the app factory and kept in
``app.extensions["automation_engine"]``; blueprints and scheduler jobs
read it from there. Its collaborators (email sender, AI agent invoker,
HTTP session) come in through the constructor.

    fire_trigger(request, now=None) -> [TriggerEvent]

Cascades are a bounded work queue of ``(request, depth, chain_id)``
rather than recursion: every store mutation made by an action comes back
as EntityChange objects, which become new requests one level deeper.
A chain that reaches max_cascade_depth with triggers still matching is
aborted and recorded as a failed event (CascadeDepthExceeded).

Dispatch never raises into the caller. The business mutation that caused
the fire has already been committed by the time dispatch starts.
"""

import logging
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor

import requests
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from practice_automation.core.exceptions import (
    CascadeDepthExceeded,
    ConditionEvaluationError,
    NotFoundError,
    ValidationError,
)
from practice_automation.models import db
from practice_automation.models.automation import (
    IDEMPOTENT_TRIGGER_TYPES,
    TriggerConfig,
    idempotency_key,
)
from practice_automation.models.workflow import WorkflowTask
from practice_automation.services import event_log, workflow_service
from practice_automation.services.action_executor import ActionContext, ActionExecutor
from practice_automation.services.action_specs import parse_actions
from practice_automation.services.agent_invoker import invoker_from_config
from practice_automation.services.automation_events import TriggerFireRequest
from practice_automation.services.condition_evaluator import evaluate
from practice_automation.services.email_service import EmailService
from practice_automation.services.scope_resolver import resolve_scope
from practice_automation.services.trigger_specs import parse_trigger_config
from practice_automation.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


class AutomationEngine:
    def __init__(self, *, email_sender, agent_invoker, http_session=None,
                 max_cascade_depth=10, action_timeout=5.0, workers=4, clock=None):
        self.max_cascade_depth = max_cascade_depth
        self.clock = clock or utcnow
        self.pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="automation-action")
        self.executor = ActionExecutor(
            email_sender=email_sender,
            agent_invoker=agent_invoker,
            http_session=http_session or requests.Session(),
            pool=self.pool,
            workers=workers,
            timeout=action_timeout,
        )

    @classmethod
    def from_config(cls, config, **overrides):
        kwargs = {
            "email_sender": EmailService.sender_from_config(config),
            "agent_invoker": invoker_from_config(config),
            "max_cascade_depth": config.get("AUTOMATION_MAX_CASCADE_DEPTH", 10),
            "action_timeout": config.get("AUTOMATION_ACTION_TIMEOUT_SECONDS", 5.0),
            "workers": config.get("AUTOMATION_ACTION_WORKERS", 4),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def shutdown(self):
        self.pool.shutdown(wait=False)

    def _now(self, now):
        return as_utc(now) if now else self.clock()

    # ── Public entry points ──────────────────────────────────────────────

    def fire_trigger(self, request, now=None):
        """Dispatch one event plus everything it cascades into."""
        if isinstance(request, dict):
            request = TriggerFireRequest.from_dict(request)
        return self._drain([request], self._now(now))

    def dispatch_changes(self, changes, now=None):
        """Turn committed store changes into trigger fires."""
        now = self._now(now)
        try:
            fire_requests = self._requests_for(changes, now)
            db.session.commit()
        except Exception:
            logger.exception("Could not translate store changes into trigger fires")
            db.session.rollback()
            return []
        return self._drain(fire_requests, now)

    def _mutate(self, fn, now):
        """Run a primary mutation, commit it, then dispatch its changes."""
        try:
            result, changes = fn()
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return result, self.dispatch_changes(changes, now)

    def transition_node(self, organization_id, entity_type, entity_id, new_status, now=None):
        now = self._now(now)

        def _do():
            node = workflow_service.get_entity(organization_id, entity_type, entity_id)
            return node, workflow_service.set_node_status(node, new_status, now)

        return self._mutate(_do, now)

    def transition_task(self, organization_id, task_id, new_status, now=None):
        return self.transition_node(organization_id, "task", task_id, new_status, now)

    def update_field(self, organization_id, entity_type, entity_id, field, value, now=None):
        now = self._now(now)

        def _do():
            changes = workflow_service.update_field(organization_id, entity_type, entity_id,
                                                    field, value, now)
            return workflow_service.get_entity(organization_id, entity_type, entity_id), changes

        return self._mutate(_do, now)

    def instantiate_workflow(self, organization_id, workflow_id, now=None, **kwargs):
        return self._mutate(
            lambda: workflow_service.instantiate_workflow(organization_id, workflow_id, **kwargs),
            self._now(now),
        )

    def add_client_contact(self, organization_id, client_id, now=None, **kwargs):
        return self._mutate(
            lambda: workflow_service.add_client_contact(organization_id, client_id, **kwargs),
            self._now(now),
        )

    def record_spend(self, organization_id, threshold_id, amount, now=None):
        now = self._now(now)
        return self._mutate(
            lambda: (threshold_id, workflow_service.record_spend(organization_id, threshold_id, amount, now)),
            now,
        )

    # ── Queue ────────────────────────────────────────────────────────────

    def _drain(self, initial, now):
        chain_id = str(uuid.uuid4())
        queue = deque((req, 0, chain_id) for req in initial)
        events = []
        while queue:
            req, depth, chain = queue.popleft()
            log_extra = {
                "organization_id": req.organization_id,
                "trigger_type": req.type,
                "chain_id": chain,
                "cascade_depth": depth,
            }
            try:
                if depth >= self.max_cascade_depth:
                    if self._candidates(req, now):
                        exc = CascadeDepthExceeded(depth, self.max_cascade_depth, chain)
                        logger.warning("%s (%d queued fires dropped)", exc, len(queue), extra=log_extra)
                        events.append(event_log.record_failure(
                            request=req, error=str(exc), chain_id=chain, depth=depth, fired_at=now,
                        ))
                        db.session.commit()
                        queue.clear()
                    continue
                fired, follow_ups = self._dispatch_one(req, depth, chain, now)
            except Exception:
                logger.exception("Trigger dispatch failed", extra=log_extra)
                db.session.rollback()
                continue
            events.extend(fired)
            queue.extend((f, depth + 1, chain) for f in follow_ups)
        return events

    def _dispatch_one(self, req, depth, chain, now):
        matches = self._candidates(req, now)
        events, changes = [], []
        for trigger, spec, scope, snapshot in matches:
            evt, trigger_changes = self._run_trigger(req, trigger, spec, scope, snapshot,
                                                     depth, chain, now)
            if evt is not None:
                events.append(evt)
            changes.extend(trigger_changes)
        follow_ups = self._requests_for(changes, now)
        db.session.commit()
        return events, follow_ups

    # ── Matching ─────────────────────────────────────────────────────────

    @staticmethod
    def _in_scope(trigger, scope):
        if trigger.workflow_id is not None and trigger.workflow_id not in scope.workflow_ids:
            return False
        if trigger.stage_id is not None and trigger.stage_id not in scope.stage_template_ids:
            return False
        if trigger.step_id is not None and trigger.step_id not in scope.step_template_ids:
            return False
        return True

    @staticmethod
    def _snapshot(req, scope):
        snapshot = dict(scope.snapshot)
        snapshot.update({
            "trigger_type": req.type,
            "field_name": req.field_name,
            "old_value": req.old_value,
            "new_value": req.new_value,
            "metadata": dict(req.metadata or {}),
        })
        return snapshot

    def _candidates(self, req, now):
        """Enabled, in-scope triggers of the request's type whose conditions pass."""
        try:
            scope = resolve_scope(req.organization_id, req.entity_type, req.entity_id)
        except (NotFoundError, ValidationError) as exc:
            logger.info("No scope for %s=%s: %s", req.entity_type, req.entity_id, exc,
                        extra={"organization_id": req.organization_id})
            return []

        triggers = db.session.execute(
            select(TriggerConfig)
            .where(
                TriggerConfig.organization_id == req.organization_id,
                TriggerConfig.trigger_type == req.type,
                TriggerConfig.is_enabled.is_(True),
            )
            .order_by(TriggerConfig.id)
        ).scalars().all()

        only = (req.metadata or {}).get("triggerConfigId")
        snapshot = self._snapshot(req, scope)
        matches = []
        for trigger in triggers:
            if only is not None and trigger.id != only:
                continue
            if not self._in_scope(trigger, scope):
                continue
            extra = {"organization_id": req.organization_id, "trigger_type": req.type,
                     "trigger_config_id": trigger.id}
            try:
                spec = parse_trigger_config(trigger.trigger_type, trigger.config)
            except ValidationError as exc:
                logger.warning("Trigger %s has an invalid config: %s", trigger.id, exc, extra=extra)
                continue
            try:
                if not spec.matches(req, trigger, scope):
                    continue
                if not evaluate(list(spec.conditions), snapshot):
                    continue
            except ConditionEvaluationError as exc:
                logger.warning("Trigger %s condition error, treated as no match: %s",
                               trigger.id, exc, extra=extra)
                continue
            except Exception:
                logger.exception("Trigger %s matching crashed, treated as no match",
                                 trigger.id, extra=extra)
                continue
            if (req.type in IDEMPOTENT_TRIGGER_TYPES and not spec.repeats()
                    and event_log.has_successful_fire(
                        req.organization_id, req.type, req.entity_id, req.field_name,
                        req.new_value, trigger_config_id=trigger.id, entity_type=req.entity_type)):
                logger.info("Trigger %s already fired for %s=%s, skipping",
                            trigger.id, req.entity_type, req.entity_id, extra=extra)
                continue
            matches.append((trigger, spec, scope, snapshot))
        return matches

    # ── Execution ────────────────────────────────────────────────────────

    def _run_trigger(self, req, trigger, trigger_spec, scope, snapshot, depth, chain, now):
        try:
            action_specs = parse_actions(trigger.actions)
        except ValidationError as exc:
            evt = event_log.record(
                request=req, trigger=trigger, scope=scope, results=[], status="failed",
                error=f"invalid actions: {exc}", chain_id=chain, depth=depth, fired_at=now,
            )
            return evt, []

        ctx = ActionContext(request=req, trigger=trigger, scope=scope, snapshot=snapshot,
                            now=now, transactional=trigger.transactional)
        # trigger rows may be expired by a savepoint rollback; keep the snapshot taken up front
        trigger_snapshot = trigger.snapshot()
        results, changes = [], []

        key = None
        if req.type in IDEMPOTENT_TRIGGER_TYPES and not trigger_spec.repeats():
            key = idempotency_key(trigger.id, req.type, req.entity_type, req.entity_id,
                                  req.field_name, req.new_value)
        # a concurrent request may have recorded the same once-only fire; undo ours if so
        guard = db.session.begin_nested() if key else None

        if trigger.transactional:
            savepoint = db.session.begin_nested()
            for spec in action_specs:
                result, action_changes = self.executor.execute(spec, ctx)
                results.append(result)
                changes.extend(action_changes)
            if all(r.success for r in results):
                savepoint.commit()
                ctx.outbound.clear()
                status = event_log.derive_status(results)
                error = None
            else:
                savepoint.rollback()
                changes = []
                self.executor.replay_outbound(ctx)
                for r in results:
                    if r.success and not r.skipped:
                        r.detail["rolled_back"] = True
                status = "failed"
                error = "transaction rolled back: " + "; ".join(r.error for r in results if r.error)
        else:
            for spec in action_specs:
                result, action_changes = self.executor.execute(spec, ctx)
                results.append(result)
                changes.extend(action_changes)
            status = event_log.derive_status(results)
            error = "; ".join(r.error for r in results if r.error) or None

        try:
            evt = event_log.record(
                request=req, trigger=trigger, scope=scope, results=results, status=status,
                error=error, chain_id=chain, depth=depth, fired_at=now,
                trigger_snapshot=trigger_snapshot,
                idempotency_key=key if status == "success" else None,
            )
        except IntegrityError:
            if guard is None:
                raise
            guard.rollback()
            logger.info("Trigger %s already fired for %s=%s in another request, discarding",
                        trigger_snapshot.get("id"), req.entity_type, req.entity_id,
                        extra={"organization_id": req.organization_id, "trigger_type": req.type})
            return None, []
        if guard is not None:
            guard.commit()
        return evt, changes

    # ── Changes → requests ───────────────────────────────────────────────

    def _requests_for(self, changes, now):
        out = []
        for ch in changes:
            base = {"entity_type": ch.entity_type, "entity_id": ch.entity_id,
                    "organization_id": ch.organization_id}
            if ch.kind == "field":
                trigger_type = "status_change" if ch.field_name == "status" else "field_change"
                out.append(TriggerFireRequest(
                    type=trigger_type, field_name=ch.field_name,
                    old_value=ch.old_value, new_value=ch.new_value, **base,
                ))
                if ch.field_name == "status" and ch.new_value == "completed":
                    out.append(TriggerFireRequest(
                        type="completion", field_name="status",
                        old_value=ch.old_value, new_value="completed", **base,
                    ))
            elif ch.kind == "all_tasks_complete":
                out.append(TriggerFireRequest(
                    type="all_tasks_complete", field_name="all_tasks_complete",
                    new_value="true", **base,
                ))
            elif ch.kind == "task_eligible":
                out.append(TriggerFireRequest(
                    type="task_dependency", field_name="eligibility", new_value="eligible",
                    metadata=dict(ch.metadata), **base,
                ))
                task = WorkflowTask.get_scoped(ch.organization_id, ch.entity_id)
                if task is not None and task.auto_start:
                    out.extend(self._requests_for(workflow_service.auto_start_task(task, now), now))
            elif ch.kind == "assignment_created":
                out.append(TriggerFireRequest(type="template_instantiated",
                                              metadata=dict(ch.metadata), **base))
            elif ch.kind == "contact_added":
                out.append(TriggerFireRequest(type="client_contact_added",
                                              metadata=dict(ch.metadata), **base))
            elif ch.kind == "budget_crossed":
                out.append(TriggerFireRequest(
                    type="budget_threshold", field_name=ch.field_name,
                    new_value=ch.new_value, metadata=dict(ch.metadata), **base,
                ))
            else:
                logger.warning("Unhandled entity change kind: %s", ch.kind)
        return out
