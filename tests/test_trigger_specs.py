"""
Tests: typed trigger and action configs.

Covers:
  1. every trigger type has a spec and every action type a handler
  2. required keys and range checks raise ValidationError at parse time
  3. matches() for value-change, scheduler-synthesised and external triggers
  4. overdue repeats only when repeatEveryDays is set
  5. action blobs parse into specs; bad blobs are rejected
"""

from types import SimpleNamespace

import pytest

from practice_automation.core.exceptions import ValidationError
from practice_automation.models.automation import TRIGGER_TYPES
from practice_automation.services.action_specs import ACTION_TYPES, parse_action_config, parse_actions
from practice_automation.services.automation_events import ScopeChain, TriggerFireRequest
from practice_automation.services.trigger_specs import TRIGGER_SPECS, parse_trigger_config

pytestmark = pytest.mark.unit


def _req(trigger_type, entity_type="task", field_name=None, old=None, new=None, **metadata):
    return TriggerFireRequest(
        type=trigger_type, entity_type=entity_type, entity_id=1, organization_id=1,
        field_name=field_name, old_value=old, new_value=new, metadata=metadata,
    )


def _trigger(**kw):
    base = {"id": 10, "workflow_id": None, "stage_id": None, "step_id": None}
    base.update(kw)
    return SimpleNamespace(**base)


SCOPE = ScopeChain(entity_type="task", entity_id=1)


class TestRegistry:
    def test_every_trigger_type_has_a_spec(self):
        assert set(TRIGGER_SPECS) == TRIGGER_TYPES

    def test_unknown_type(self):
        with pytest.raises(ValidationError, match="Unknown trigger type"):
            parse_trigger_config("phase_of_moon", {})

    def test_config_must_be_object(self):
        with pytest.raises(ValidationError):
            parse_trigger_config("manual", ["nope"])

    def test_conditions_are_validated(self):
        with pytest.raises(ValidationError):
            parse_trigger_config("manual", {"conditions": [{"field": "x", "operator": "like"}]})


class TestParsing:
    @pytest.mark.parametrize("trigger_type,config", [
        ("field_change", {}),
        ("time_threshold", {}),
        ("time_threshold", {"inactivityHours": 0}),
        ("time_threshold", {"inactivityHours": 24, "watchStatuses": ["stalled"]}),
        ("fiscal_deadline", {"month": 4}),
        ("fiscal_deadline", {"month": 13, "day": 1}),
        ("due_date_approaching", {"daysBeforeDue": -1}),
        ("due_date_approaching", {"appliesTo": "client"}),
        ("overdue", {"repeatEveryDays": 0}),
        ("schedule", {"scheduleType": "recurring"}),
        ("schedule", {"cron": "not a cron"}),
        ("schedule", {"scheduleType": "one_time"}),
        ("webhook", {}),
        ("status_change", {"toValue": "archived"}),
        ("relative_date", {"anchorField": "birthday"}),
    ])
    def test_rejects_bad_config(self, trigger_type, config):
        with pytest.raises(ValidationError):
            parse_trigger_config(trigger_type, config)

    def test_defaults(self):
        spec = parse_trigger_config("due_date_approaching", {})
        assert spec.days_before_due == 3
        assert spec.applies_to == "assignment"

    def test_valid_cron(self):
        spec = parse_trigger_config("schedule", {"cron": "0 9 * * mon-fri", "timezone": "UTC"})
        assert spec.schedule_type == "recurring"
        assert spec.cron_trigger() is not None


class TestValueChange:
    def test_status_change_from_to(self):
        spec = parse_trigger_config("status_change", {"fromValue": "in_progress", "toValue": "completed"})
        assert spec.matches(_req("status_change", field_name="status", old="in_progress", new="completed"),
                            _trigger(), SCOPE)
        assert not spec.matches(_req("status_change", field_name="status", old="not_started", new="completed"),
                                _trigger(), SCOPE)

    def test_status_change_entity_type_filter(self):
        spec = parse_trigger_config("status_change", {"toValue": "completed", "entityType": "stage"})
        assert not spec.matches(_req("status_change", field_name="status", new="completed"), _trigger(), SCOPE)

    def test_field_change_any_change(self):
        spec = parse_trigger_config("field_change", {"fieldName": "priority", "anyChange": True})
        assert spec.matches(_req("field_change", field_name="priority", old="normal", new="high"),
                            _trigger(), SCOPE)
        assert not spec.matches(_req("field_change", field_name="due_date", old=None, new="2026-04-15"),
                                _trigger(), SCOPE)

    def test_completion(self):
        spec = parse_trigger_config("completion", {"entityType": "task"})
        assert spec.matches(_req("completion", new="completed"), _trigger(), SCOPE)


class TestScheduledTypes:
    def test_due_date_days_must_match(self):
        spec = parse_trigger_config("due_date_approaching", {"daysBeforeDue": 3})
        assert spec.matches(_req("due_date_approaching", "assignment", daysUntilDue=3), _trigger(), SCOPE)
        assert not spec.matches(_req("due_date_approaching", "assignment", daysUntilDue=2), _trigger(), SCOPE)
        assert not spec.matches(_req("due_date_approaching", "task", daysUntilDue=3), _trigger(), SCOPE)

    def test_overdue_grace(self):
        spec = parse_trigger_config("overdue", {"gracePeriodDays": 2})
        assert not spec.matches(_req("overdue", "assignment", daysOverdue=1), _trigger(), SCOPE)
        assert spec.matches(_req("overdue", "assignment", daysOverdue=2), _trigger(), SCOPE)

    def test_overdue_repeats_only_with_interval(self):
        assert parse_trigger_config("overdue", {}).repeats() is False
        assert parse_trigger_config("overdue", {"repeatEveryDays": 7}).repeats() is True

    def test_time_threshold_needs_watched_status(self):
        spec = parse_trigger_config("time_threshold", {"inactivityHours": 48})
        assert spec.matches(_req("time_threshold", inactiveHours=50, status="in_progress"), _trigger(), SCOPE)
        assert not spec.matches(_req("time_threshold", inactiveHours=50, status="blocked"), _trigger(), SCOPE)
        assert not spec.matches(_req("time_threshold", inactiveHours=47.5, status="in_progress"),
                                _trigger(), SCOPE)

    def test_budget_threshold(self):
        spec = parse_trigger_config("budget_threshold", {"thresholdPercentage": 90})
        assert spec.matches(_req("budget_threshold", "assignment", spendPercentage=91.5), _trigger(), SCOPE)
        assert not spec.matches(_req("budget_threshold", "assignment", spendPercentage=85), _trigger(), SCOPE)

    def test_team_capacity(self):
        spec = parse_trigger_config("team_capacity", {"capacityPercentage": 90, "userId": 4})
        req = _req("team_capacity", "user", utilization=95.0)
        req.entity_id = 4
        assert spec.matches(req, _trigger(), SCOPE)
        req.entity_id = 5
        assert not spec.matches(req, _trigger(), SCOPE)

    def test_schedule_matches_only_its_own_fire(self):
        spec = parse_trigger_config("schedule", {"cron": "*/5 * * * *"})
        assert spec.matches(_req("schedule", "organization", triggerConfigId=10), _trigger(id=10), SCOPE)
        assert not spec.matches(_req("schedule", "organization", triggerConfigId=11), _trigger(id=10), SCOPE)


class TestAllTasksComplete:
    def test_stage_trigger_matches_only_its_stage(self):
        spec = parse_trigger_config("all_tasks_complete", {})
        trigger = _trigger(workflow_id=1, stage_id=7)
        stage_scope = ScopeChain(entity_type="stage", entity_id=70, entity_template_id=7)
        other_stage = ScopeChain(entity_type="stage", entity_id=80, entity_template_id=8)
        assert spec.matches(_req("all_tasks_complete", "stage"), trigger, stage_scope)
        assert not spec.matches(_req("all_tasks_complete", "stage"), trigger, other_stage)
        assert not spec.matches(_req("all_tasks_complete", "step"), trigger, stage_scope)

    def test_workflow_trigger_matches_assignment(self):
        spec = parse_trigger_config("all_tasks_complete", {})
        trigger = _trigger(workflow_id=1)
        assert spec.matches(_req("all_tasks_complete", "assignment"), trigger, SCOPE)
        assert not spec.matches(_req("all_tasks_complete", "stage"), trigger, SCOPE)


class TestExternal:
    def test_webhook_key(self):
        spec = parse_trigger_config("webhook", {"webhookKey": "intake-form"})
        assert spec.matches(_req("webhook", "client", webhookKey="intake-form"), _trigger(), SCOPE)
        assert not spec.matches(_req("webhook", "client", webhookKey="other"), _trigger(), SCOPE)

    def test_email_filters_are_case_insensitive(self):
        spec = parse_trigger_config("email", {"fromContains": "@irs.gov", "subjectContains": "notice"})
        assert spec.matches(_req("email", "client", **{"from": "Agent@IRS.gov", "subject": "CP2000 Notice"}),
                            _trigger(), SCOPE)


class TestActions:
    def test_every_action_type_registered(self):
        assert len(ACTION_TYPES) == 14

    def test_parse_send_email(self):
        spec = parse_action_config({"type": "send_email",
                                    "config": {"to": "client", "subject": "Hi {client.name}"}})
        assert spec.action_type == "send_email"
        assert spec.to == "client"
        assert spec.mutates_store is False

    def test_mutating_actions_are_flagged(self):
        specs = parse_actions([
            {"type": "apply_tags", "config": {"tags": ["vip"]}},
            {"type": "advance_stage"},
            {"type": "call_api", "config": {"url": "https://hooks.example.test/x"}},
        ])
        assert [s.mutates_store for s in specs] == [True, True, False]

    @pytest.mark.parametrize("blob", [
        {"type": "teleport"},
        {"type": "send_email", "config": {}},
        {"type": "update_field", "config": {"field": "priority"}},
        {"type": "apply_tags", "config": {"tags": "vip"}},
        {"type": "call_api", "config": {"url": "ftp://files.example.test"}},
        {"type": "request_documents", "config": {"documents": []}},
        {"type": "schedule_followup", "config": {"delayUnit": "fortnights"}},
        {"type": "send_notification", "config": {"title": "x"}, "conditions": "vip"},
    ])
    def test_rejects(self, blob):
        with pytest.raises(ValidationError):
            parse_action_config(blob)

    def test_actions_must_be_a_list(self):
        with pytest.raises(ValidationError):
            parse_actions({"type": "advance_stage"})
