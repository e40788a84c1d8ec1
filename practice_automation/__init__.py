"""
Practice Automation Engine
Flask Application Factory.

Usage:
    from practice_automation import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from practice_automation.config import config
from practice_automation.middleware.logging_config import configure_logging
from practice_automation.middleware.timing import init_request_timing
from practice_automation.models import db

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _ensure_sqlite_dir(uri):
    if uri and uri.startswith("sqlite:///") and ":memory:" not in uri:
        os.makedirs(os.path.dirname(uri[len("sqlite:///"):]) or ".", exist_ok=True)


def create_app(config_name=None, **engine_overrides):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        engine_overrides: Collaborators to hand to AutomationEngine instead of
                     the configured ones (email_sender, agent_invoker, clock, ...).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)
    _ensure_sqlite_dir(app.config.get("SQLALCHEMY_DATABASE_URI"))

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    init_request_timing(app)

    # ── Import all models so create_all / Alembic see them ───────────────
    from practice_automation.models import auth as _auth_models              # noqa: F401
    from practice_automation.models import client as _client_models          # noqa: F401
    from practice_automation.models import workflow as _workflow_models      # noqa: F401
    from practice_automation.models import dependency as _dependency_models  # noqa: F401
    from practice_automation.models import automation as _automation_models  # noqa: F401
    from practice_automation.models import notification as _notification_models  # noqa: F401
    from practice_automation.models import scheduling as _scheduling_models  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Automation engine (one per process) ──────────────────────────────
    from practice_automation.services.automation_engine import AutomationEngine

    app.extensions["automation_engine"] = AutomationEngine.from_config(app.config, **engine_overrides)

    # ── Blueprints ───────────────────────────────────────────────────────
    from practice_automation.blueprints import ALL_BLUEPRINTS

    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
        limiter.limit("120/minute")(bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Practice Automation Engine"}

    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Scheduler (import jobs to register them) ─────────────────────────
    importlib.import_module("practice_automation.services.scheduled_jobs")
    from practice_automation.services.scheduler_service import SchedulerService

    SchedulerService.init_app(app)

    return app
