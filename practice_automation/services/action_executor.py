"""
Action Executor.

    ActionExecutor.execute(spec, ctx) -> (ActionResult, [EntityChange])

One handler per action type (``_do_<action_type>``); the registry is
checked against ACTION_TYPES at import time. Each action is isolated:

    - action-local conditions failing → success, skipped
    - a handler exception → failed ActionResult; siblings still run
    - store-mutating handlers run in their own SAVEPOINT, so a half-done
      mutation never survives a failed action
    - external calls (email transport, AI agent, outbound HTTP) run on the
      engine's thread pool and are bounded by the action timeout

send_email never drops a message: any delivery failure (error, timeout,
unresolvable recipient) produces exactly one warning notification with
``metadata.emailError``. Inside a transactional trigger the fallback is
deferred until the trigger's savepoint has been resolved, so the
rollback cannot take it with it.
"""

import logging
import threading
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import requests

from practice_automation.core.exceptions import (
    ActionExecutionError,
    ConditionEvaluationError,
    NotFoundError,
    ValidationError,
)
from practice_automation.models import db
from practice_automation.models.auth import User
from practice_automation.models.client import Client
from practice_automation.models.workflow import WorkflowStep
from practice_automation.services import workflow_service
from practice_automation.services.action_specs import ACTION_TYPES
from practice_automation.services.agent_invoker import AgentInvocationError
from practice_automation.services.automation_events import ActionResult
from practice_automation.services.condition_evaluator import evaluate
from practice_automation.services.email_service import EmailSendResult, EmailService, render
from practice_automation.services.notification import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class OutboundEmail:
    organization_id: int
    to_email: str
    subject: str
    body: str
    result: EmailSendResult
    trigger_config_id: int | None
    entity_type: str | None
    entity_id: int | None
    user_id: int | None
    detail: dict = field(default_factory=dict)


@dataclass
class ActionContext:
    request: object
    trigger: object
    scope: object
    snapshot: dict
    now: datetime
    transactional: bool = False
    outbound: list = field(default_factory=list)

    @property
    def organization_id(self):
        return self.request.organization_id


class ActionExecutor:
    def __init__(self, *, email_sender, agent_invoker, http_session=None, pool=None,
                 workers=1, timeout=5.0):
        self.email_sender = email_sender
        self.agent_invoker = agent_invoker
        self.http = http_session or requests.Session()
        self.pool = pool
        self.timeout = timeout
        self._slots = threading.BoundedSemaphore(workers)

    # ── Entry point ──────────────────────────────────────────────────────

    def execute(self, spec, ctx):
        action_type = spec.action_type
        try:
            if not evaluate(list(spec.conditions), ctx.snapshot):
                return ActionResult(action_type, True, {"reason": "conditions not met"}, skipped=True), []
        except ConditionEvaluationError as exc:
            logger.warning("Action %s condition error: %s", action_type, exc,
                           extra={"organization_id": ctx.organization_id})
            return self._skipped(action_type, exc), []
        except Exception as exc:
            logger.exception("Action %s condition check crashed", action_type,
                             extra={"organization_id": ctx.organization_id})
            return self._skipped(action_type, exc), []

        handler = getattr(self, f"_do_{action_type}")
        try:
            if spec.mutates_store:
                with db.session.begin_nested():
                    detail, changes = handler(spec, ctx)
            else:
                detail, changes = handler(spec, ctx)
        except ActionExecutionError as exc:
            logger.warning("Action %s failed: %s", action_type, exc,
                           extra={"organization_id": ctx.organization_id})
            return ActionResult(action_type, False, exc.detail, error=str(exc)), []
        except (NotFoundError, ValidationError) as exc:
            logger.warning("Action %s rejected: %s", action_type, exc,
                           extra={"organization_id": ctx.organization_id})
            return ActionResult(action_type, False, {}, error=f"{action_type}: {exc}"), []
        except Exception as exc:
            logger.exception("Action %s crashed", action_type,
                             extra={"organization_id": ctx.organization_id})
            return ActionResult(action_type, False, {}, error=f"{action_type}: {exc}"), []
        return ActionResult(action_type, True, detail or {}), changes

    def replay_outbound(self, ctx):
        """Re-record email attempts after a transactional rollback erased them."""
        for out in ctx.outbound:
            self._record_email(out, with_fallback=not out.result.ok)
        ctx.outbound.clear()

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _skipped(action_type, exc):
        return ActionResult(action_type, True, {"reason": "conditions not met",
                                                "condition_error": str(exc)}, skipped=True)

    def _call_external(self, action_type, fn, *args, **kwargs):
        """
        Run ``fn`` on the pool, waiting at most ``timeout`` seconds.

        A slot is taken per call and given back only when the call really
        ends, timed out or not. Submission therefore never queues behind a
        hung call: with every worker stuck the action fails at once as
        saturated instead of spending its timeout in the queue.
        """
        if self.pool is None:
            return fn(*args, **kwargs)
        if not self._slots.acquire(blocking=False):
            raise ActionExecutionError(
                action_type, "no free worker for external calls (all busy or hung)",
                detail={"saturated": True},
            )
        try:
            future = self.pool.submit(fn, *args, **kwargs)
        except RuntimeError:
            self._slots.release()
            raise
        future.add_done_callback(lambda _f: self._slots.release())
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            logger.warning("%s call still running after %ss, abandoned", action_type, self.timeout)
            raise ActionExecutionError(
                action_type, f"timed out after {self.timeout}s", detail={"timeout": True},
            )

    @staticmethod
    def _snapshot_id(ctx, kind):
        if ctx.request.entity_type == kind and ctx.request.entity_id is not None:
            return ctx.request.entity_id
        node = ctx.snapshot.get(kind) or {}
        return node.get("id")

    def _assignment(self, ctx, action_type):
        assignment_id = ctx.scope.assignment_id
        if assignment_id is None:
            raise ActionExecutionError(action_type, "no assignment in scope")
        return workflow_service.get_assignment(ctx.organization_id, assignment_id)

    def _resolve_user(self, ctx, token):
        """Map a recipient token to a User of this organization, or None."""
        if token in (None, ""):
            return None
        org_id = ctx.organization_id
        if token == "assignee":
            user_id = ((ctx.snapshot.get("task") or {}).get("assigned_to_id")
                       or (ctx.snapshot.get("assignment") or {}).get("assigned_to_id"))
            return User.get_scoped(org_id, user_id) if user_id else None
        if token == "owner":
            owner_id = (ctx.snapshot.get("client") or {}).get("owner_id")
            return User.get_scoped(org_id, owner_id) if owner_id else None
        if str(token).isdigit():
            return User.get_scoped(org_id, int(token))
        if "@" in str(token):
            return User.query_for_org(org_id).filter_by(email=str(token)).first()
        return None

    def _resolve_email(self, ctx, token):
        """(address, user) for a send_email recipient token."""
        if token == "client":
            client_id = self._snapshot_id(ctx, "client")
            client = Client.get_scoped(ctx.organization_id, client_id) if client_id else None
            return (client.email if client else None), None
        if token and "@" in str(token):
            return str(token), self._resolve_user(ctx, token)
        user = self._resolve_user(ctx, token)
        return (user.email if user else None), user

    def _record_email(self, out, *, with_fallback):
        log = EmailService.log_attempt(
            organization_id=out.organization_id,
            to_email=out.to_email or "(unresolved)",
            subject=out.subject,
            result=out.result,
            trigger_config_id=out.trigger_config_id,
            entity_type=out.entity_type,
            entity_id=out.entity_id,
        )
        if with_fallback:
            notif = NotificationService.create(
                organization_id=out.organization_id,
                user_id=out.user_id,
                title=f"Email not delivered: {out.subject}"[:300],
                message=out.body,
                notification_type="warning",
                metadata={
                    "emailError": out.result.error,
                    "emailTo": out.to_email,
                    "emailSubject": out.subject,
                },
                entity_type=out.entity_type or "",
                entity_id=out.entity_id,
                commit=False,
            )
            log.fallback_notification_id = notif.id
            out.detail["fallback_notification_id"] = notif.id
            db.session.flush()
        return log

    # ── Messaging ────────────────────────────────────────────────────────

    def _do_send_email(self, spec, ctx):
        to_email, user = self._resolve_email(ctx, spec.to)
        subject = render(spec.subject, ctx.snapshot)
        body = render(spec.body, ctx.snapshot)

        if not to_email:
            result = EmailSendResult(ok=False, error=f"No email address for recipient '{spec.to}'")
        else:
            try:
                result = self._call_external("send_email", self.email_sender.send, to_email, subject, body)
            except ActionExecutionError as exc:
                result = EmailSendResult(ok=False, error=exc.reason)
            except Exception as exc:
                logger.exception("Email sender raised")
                result = EmailSendResult(ok=False, error=str(exc))

        if user is None and not result.ok:
            user = self._resolve_user(ctx, "assignee")
        out = OutboundEmail(
            organization_id=ctx.organization_id,
            to_email=to_email,
            subject=subject,
            body=body,
            result=result,
            trigger_config_id=ctx.trigger.id if ctx.trigger is not None else None,
            entity_type=ctx.request.entity_type,
            entity_id=ctx.request.entity_id,
            user_id=user.id if user else None,
            detail={"to": to_email, "subject": subject, "sent": result.ok},
        )

        if result.ok:
            self._record_email(out, with_fallback=False)
            if ctx.transactional:
                ctx.outbound.append(out)
            out.detail["message_id"] = result.message_id
            return out.detail, []

        out.detail["emailError"] = result.error
        if ctx.transactional:
            # the trigger savepoint is about to roll back; replay_outbound delivers the fallback
            ctx.outbound.append(out)
        else:
            self._record_email(out, with_fallback=True)
        raise ActionExecutionError("send_email", result.error or "delivery failed", detail=out.detail)

    def _do_send_notification(self, spec, ctx):
        user = self._resolve_user(ctx, spec.recipient)
        notif = NotificationService.create(
            organization_id=ctx.organization_id,
            user_id=user.id if user else None,
            title=render(spec.title, ctx.snapshot)[:300],
            message=render(spec.message, ctx.snapshot),
            notification_type=spec.notification_type,
            metadata={"triggerConfigId": ctx.trigger.id if ctx.trigger is not None else None},
            entity_type=ctx.request.entity_type,
            entity_id=ctx.request.entity_id,
            commit=False,
        )
        return {"notification_id": notif.id, "user_id": notif.user_id}, []

    def _do_request_documents(self, spec, ctx):
        user = self._resolve_user(ctx, spec.recipient)
        due = (workflow_service.due_in(ctx.now, spec.due_in_days).isoformat()
               if spec.due_in_days is not None else None)
        client_name = (ctx.snapshot.get("client") or {}).get("name") or "client"
        lines = "\n".join(f"- {doc}" for doc in spec.documents)
        message = render(spec.message, ctx.snapshot) or f"Please collect from {client_name}:"
        notif = NotificationService.create(
            organization_id=ctx.organization_id,
            user_id=user.id if user else None,
            title=f"Documents requested: {client_name}"[:300],
            message=f"{message}\n{lines}",
            notification_type="action_required",
            metadata={"documents": list(spec.documents), "dueDate": due},
            entity_type=ctx.request.entity_type,
            entity_id=ctx.request.entity_id,
            commit=False,
        )
        return {"notification_id": notif.id, "documents": list(spec.documents), "due_date": due}, []

    # ── Entity store mutations ───────────────────────────────────────────

    def _target_step(self, spec_step_id, ctx, action_type):
        assignment = self._assignment(ctx, action_type)
        if spec_step_id is not None:
            for stage in assignment.stages:
                for step in stage.steps:
                    if spec_step_id in (step.id, step.source_id):
                        return step
            raise ActionExecutionError(action_type, f"step {spec_step_id} not in assignment {assignment.id}")
        step_id = self._snapshot_id(ctx, "step")
        if step_id:
            step = WorkflowStep.get_scoped(ctx.organization_id, step_id)
            if step is not None and step.assignment_id == assignment.id:
                return step
        for stage in assignment.stages:
            for step in stage.steps:
                if step.status != "completed":
                    return step
        raise ActionExecutionError(action_type, f"assignment {assignment.id} has no open step")

    def _assignee_id(self, ctx, token):
        user = self._resolve_user(ctx, token)
        return user.id if user else None

    def _do_create_task(self, spec, ctx):
        step = self._target_step(spec.step_id, ctx, "create_task")
        task = workflow_service.create_task(
            step,
            name=render(spec.name, ctx.snapshot),
            description=render(spec.description, ctx.snapshot),
            assigned_to_id=self._assignee_id(ctx, spec.assign_to),
            due_date=(workflow_service.due_in(ctx.now, spec.due_in_days)
                      if spec.due_in_days is not None else None),
            auto_start=spec.auto_start,
            now=ctx.now,
        )
        changes = []
        if spec.auto_start:
            changes = workflow_service.set_node_status(task, "in_progress", ctx.now)
        return {"task_id": task.id, "step_id": step.id}, changes

    def _do_schedule_followup(self, spec, ctx):
        if spec.delay_unit == "months":
            due = workflow_service.add_months(ctx.now.date(), spec.delay)
        else:
            due = (ctx.now + timedelta(**{spec.delay_unit: spec.delay})).date()
        step = self._target_step(None, ctx, "schedule_followup")
        task = workflow_service.create_task(
            step,
            name=render(spec.name, ctx.snapshot),
            assigned_to_id=self._assignee_id(ctx, spec.assign_to),
            due_date=due,
            now=ctx.now,
        )
        return {"task_id": task.id, "due_date": due.isoformat()}, []

    def _do_update_field(self, spec, ctx):
        entity_type = spec.entity or ctx.request.entity_type
        entity_id = self._snapshot_id(ctx, entity_type)
        if entity_id is None:
            raise ActionExecutionError("update_field", f"no {entity_type} in scope")
        value = render(spec.value, ctx.snapshot) if isinstance(spec.value, str) else spec.value
        changes = workflow_service.update_field(
            ctx.organization_id, entity_type, entity_id, spec.field, value, ctx.now,
        )
        return {"entity_type": entity_type, "entity_id": entity_id, "field": spec.field,
                "changed": bool(changes)}, changes

    def _do_update_status(self, spec, ctx):
        entity_type = spec.entity or ctx.request.entity_type
        entity_id = self._snapshot_id(ctx, entity_type)
        if entity_id is None or entity_type not in workflow_service.NODE_TYPES.values():
            raise ActionExecutionError("update_status", f"no {entity_type} in scope")
        node = workflow_service.get_entity(ctx.organization_id, entity_type, entity_id)
        old = node.status
        changes = workflow_service.set_node_status(node, spec.status, ctx.now)
        return {"entity_type": entity_type, "entity_id": entity_id,
                "from": old, "to": node.status}, changes

    def _do_advance_stage(self, spec, ctx):
        assignment = self._assignment(ctx, "advance_stage")
        changes = workflow_service.advance_stage(assignment, ctx.now)
        return {"assignment_id": assignment.id}, changes

    def _tag_target_id(self, spec, ctx, action_type):
        target_id = self._snapshot_id(ctx, spec.target)
        if target_id is None:
            raise ActionExecutionError(action_type, f"no {spec.target} in scope")
        return target_id

    def _do_apply_tags(self, spec, ctx):
        target_id = self._tag_target_id(spec, ctx, "apply_tags")
        changes = workflow_service.apply_tags(ctx.organization_id, spec.target, target_id,
                                              list(spec.tags), ctx.now)
        return {"target": spec.target, "target_id": target_id, "tags": list(spec.tags)}, changes

    def _do_remove_tags(self, spec, ctx):
        target_id = self._tag_target_id(spec, ctx, "remove_tags")
        changes = workflow_service.remove_tags(ctx.organization_id, spec.target, target_id,
                                               list(spec.tags), clear_all=spec.clear_all,
                                               now=ctx.now)
        return {"target": spec.target, "target_id": target_id, "cleared": spec.clear_all}, changes

    def _do_assign_user(self, spec, ctx):
        entity_type = spec.entity or ("task" if ctx.request.entity_type == "task" else "assignment")
        entity_id = self._snapshot_id(ctx, entity_type)
        if entity_id is None:
            raise ActionExecutionError("assign_user", f"no {entity_type} in scope")
        changes = workflow_service.assign_user(ctx.organization_id, entity_type, entity_id,
                                               spec.user_id, ctx.now)
        return {"entity_type": entity_type, "entity_id": entity_id, "user_id": spec.user_id}, changes

    def _do_trigger_workflow(self, spec, ctx):
        client_id = spec.client_id or self._snapshot_id(ctx, "client")
        assignment, changes = workflow_service.instantiate_workflow(
            ctx.organization_id,
            spec.workflow_id,
            client_id=client_id,
            name=render(spec.name, ctx.snapshot) if spec.name else None,
            due_date=(workflow_service.due_in(ctx.now, spec.due_in_days)
                      if spec.due_in_days is not None else None),
        )
        return {"assignment_id": assignment.id, "workflow_id": spec.workflow_id}, changes

    # ── External calls ───────────────────────────────────────────────────

    def _do_run_ai_agent(self, spec, ctx):
        payload = {k: render(v, ctx.snapshot) if isinstance(v, str) else v for k, v in spec.input}
        payload.setdefault("context", {
            "entity_type": ctx.request.entity_type,
            "entity_id": ctx.request.entity_id,
            "organization_id": ctx.organization_id,
        })
        try:
            output = self._call_external("run_ai_agent", self.agent_invoker.invoke, spec.agent_slug, payload)
        except AgentInvocationError as exc:
            raise ActionExecutionError("run_ai_agent", str(exc), detail={"agent": spec.agent_slug})
        detail = {"agent": spec.agent_slug, "output": output}
        if spec.notify:
            user = self._resolve_user(ctx, spec.notify)
            notif = NotificationService.create(
                organization_id=ctx.organization_id,
                user_id=user.id if user else None,
                title=f"AI agent {spec.agent_slug} finished",
                message=str((output.get("summary") or output.get("result") or "")
                            if isinstance(output, dict) else output)[:2000],
                metadata={"agent": spec.agent_slug},
                entity_type=ctx.request.entity_type,
                entity_id=ctx.request.entity_id,
                commit=False,
            )
            detail["notification_id"] = notif.id
        return detail, []

    def _do_call_api(self, spec, ctx):
        payload = {k: render(v, ctx.snapshot) if isinstance(v, str) else v for k, v in spec.payload}
        kwargs = {"headers": dict(spec.headers), "timeout": self.timeout}
        if spec.method == "GET":
            kwargs["params"] = payload
        else:
            kwargs["json"] = payload
        try:
            resp = self._call_external("call_api", self.http.request, spec.method, spec.url, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise ActionExecutionError("call_api", str(exc), detail={"url": spec.url})
        try:
            body = resp.json()
        except ValueError:
            body = resp.text[:1000]
        return {"url": spec.url, "status_code": resp.status_code, "response": body}, []


_unhandled = ACTION_TYPES - {name[len("_do_"):] for name in dir(ActionExecutor) if name.startswith("_do_")}
if _unhandled:
    raise RuntimeError(f"Action types without a handler: {sorted(_unhandled)}")
