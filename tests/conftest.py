"""
Shared pytest fixtures for the Practice Automation Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - email_sender / agents / http_session: engine collaborators
    - engine: AutomationEngine wired to the collaborators above, installed
      as the app's engine for the duration of the test
    - org / other_org / preparer / tax_client / tax_workflow: seed data
    - make_trigger: TriggerConfig factory
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from practice_automation import create_app
from practice_automation.models import db as _db
from practice_automation.models.auth import Organization, User
from practice_automation.models.automation import TriggerConfig
from practice_automation.models.client import Client
from practice_automation.services import workflow_service
from practice_automation.services.agent_invoker import RegistryAgentInvoker
from practice_automation.services.automation_engine import AutomationEngine
from practice_automation.services.email_service import EmailSendResult

# Fixed clock for every time-sensitive test: Monday 2 March 2026, 09:00 UTC
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Engine fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def email_sender():
    sender = MagicMock(name="email_sender")
    sender.send.return_value = EmailSendResult(ok=True, message_id="test-msg-1")
    return sender


@pytest.fixture()
def agents():
    return RegistryAgentInvoker()


@pytest.fixture()
def http_session():
    return MagicMock(name="http_session")


@pytest.fixture()
def engine(app, email_sender, agents, http_session):
    """AutomationEngine with test doubles, swapped in as the app's engine."""
    eng = AutomationEngine(
        email_sender=email_sender,
        agent_invoker=agents,
        http_session=http_session,
        action_timeout=0.5,
        workers=2,
        clock=lambda: NOW,
    )
    previous = app.extensions["automation_engine"]
    app.extensions["automation_engine"] = eng
    yield eng
    app.extensions["automation_engine"] = previous
    eng.shutdown()


# ── Seed data ────────────────────────────────────────────────────────────


@pytest.fixture()
def org():
    o = Organization(name="Lee & Partners CPA", slug="lee-partners")
    _db.session.add(o)
    _db.session.flush()
    return o


@pytest.fixture()
def other_org():
    o = Organization(name="Other Practice", slug="other-practice")
    _db.session.add(o)
    _db.session.flush()
    return o


@pytest.fixture()
def preparer(org):
    u = User(organization_id=org.id, email="pat@leepartners.test", full_name="Pat Preparer")
    _db.session.add(u)
    _db.session.flush()
    return u


@pytest.fixture()
def tax_client(org, preparer):
    c = Client(organization_id=org.id, name="Jordan Lee", email="jordan@example.test",
               client_type="individual", tags=[], owner_id=preparer.id)
    _db.session.add(c)
    _db.session.flush()
    return c


@pytest.fixture()
def tax_workflow(org):
    """Two auto-progressing stages: Collection (W-2, 1099) then Review."""
    return workflow_service.create_workflow(org.id, {
        "name": "1040 Tax Return",
        "category": "tax",
        "stages": [
            {"name": "Collection", "auto_progress": True,
             "tasks": [{"name": "Collect W-2"}, {"name": "Collect 1099"}]},
            {"name": "Review", "auto_progress": True,
             "tasks": [{"name": "Partner review"}]},
        ],
    })


@pytest.fixture()
def make_trigger():
    """Factory inserting a TriggerConfig directly (no validation), flushed."""
    def _make(organization_id, trigger_type, *, config=None, actions=None, name=None,
              workflow_id=None, stage_id=None, step_id=None, transactional=False,
              is_enabled=True):
        trigger = TriggerConfig(
            organization_id=organization_id,
            name=name or trigger_type,
            trigger_type=trigger_type,
            workflow_id=workflow_id,
            stage_id=stage_id,
            step_id=step_id,
            config=config or {},
            actions=actions or [],
            transactional=transactional,
            is_enabled=is_enabled,
        )
        _db.session.add(trigger)
        _db.session.flush()
        return trigger
    return _make
