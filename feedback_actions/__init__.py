"""
Feedback Action Engine
Flask Application Factory.

Usage:
    from feedback_actions import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask, request
from flask.cli import AppGroup
from flask_cors import CORS
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from feedback_actions.config import config
from feedback_actions.middleware.jwt_auth import init_jwt_middleware
from feedback_actions.middleware.logging_config import configure_logging
from feedback_actions.middleware.tenant_context import init_tenant_context
from feedback_actions.middleware.timing import init_request_timing
from feedback_actions.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def _config_object(config_name):
    config_class = config[config_name]
    # ProductionConfig validates its environment on instantiation
    return config_class() if config_name == "production" else config_class


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(_config_object(config_name))

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # Order matters: timing -> JWT claims -> tenant scope
    init_request_timing(app)
    init_jwt_middleware(app)
    init_tenant_context(app)

    from feedback_actions.models import action as _action_models          # noqa: F401
    from feedback_actions.models import auth as _auth_models              # noqa: F401
    from feedback_actions.models import notification as _notification_models  # noqa: F401
    from feedback_actions.models import plan as _plan_models              # noqa: F401
    from feedback_actions.models import rules as _rules_models            # noqa: F401
    from feedback_actions.models import scheduling as _scheduling_models  # noqa: F401
    from feedback_actions.models import survey as _survey_models          # noqa: F401

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config[
        "SQLALCHEMY_DATABASE_URI"
    ]:
        os.makedirs(os.path.join(os.path.dirname(os.path.dirname(__file__)), "instance"), exist_ok=True)

    with app.app_context():
        db.create_all()
        logger.info("db.create_all() completed successfully")

    from feedback_actions.blueprints.action_bp import action_bp
    from feedback_actions.blueprints.action_plan_bp import action_plan_bp
    from feedback_actions.blueprints.notification_bp import notification_bp
    from feedback_actions.blueprints.rules_bp import rules_bp
    from feedback_actions.blueprints.scheduler_bp import scheduler_bp

    app.register_blueprint(action_bp)
    app.register_blueprint(action_plan_bp)
    app.register_blueprint(rules_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(scheduler_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Feedback Action Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("feedback_actions.services.scheduled_jobs")  # registers @register_job handlers
    from feedback_actions.services.scheduler_service import SchedulerService, get_registered_jobs
    SchedulerService.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    scheduler_cli = AppGroup("scheduler", help="Background job runner.")

    @scheduler_cli.command("run")
    @click.option("--poll", "poll_seconds", type=int, default=None, help="Seconds between ticks.")
    def scheduler_run_cmd(poll_seconds):
        """Run the tick loop until interrupted (one process per deployment)."""
        SchedulerService.ensure_jobs_registered()
        SchedulerService.run_forever(poll_seconds)

    @scheduler_cli.command("run-job")
    @click.argument("job_name")
    def scheduler_run_job_cmd(job_name):
        """Run a single registered job once."""
        if job_name not in get_registered_jobs():
            raise click.BadParameter(f"Unknown job: {job_name}", param_hint="job_name")
        SchedulerService.ensure_jobs_registered()
        outcome = SchedulerService.run_job(job_name)
        click.echo(f"{outcome['job_name']}: {outcome['status']} in {outcome['duration_ms']}ms")
        if outcome["error"]:
            raise click.ClickException(outcome["error"])

    app.cli.add_command(scheduler_cli)

    return app
