"""
Decision Engine
Flask application factory.

    from decision_engine import create_app
    app = create_app()            # APP_ENV, else "development"
    app = create_app("testing")
"""

import importlib
import logging
import os

from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event
from sqlalchemy.engine import Engine

from decision_engine.auth import init_auth
from decision_engine.config import config
from decision_engine.middleware.logging_config import configure_logging
from decision_engine.middleware.rate_limiter import init_rate_limits
from decision_engine.models import db

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)

# Importing these modules registers their tables and scheduler jobs
_MODEL_MODULES = ("decision_engine.models.decision", "decision_engine.models.scheduling")
_JOB_MODULES = ("decision_engine.services.scheduled_jobs",)


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, _record):
    # SQLite ignores ON DELETE CASCADE unless asked per connection
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """Build a configured app for ``config_name`` ("development", "testing" or "production")."""
    settings = config[config_name or os.getenv("APP_ENV", "development")]
    settings.validate()

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(settings)
    configure_logging(app)

    _init_extensions(app)
    init_auth(app)
    _init_database(app)
    _register_blueprints(app)
    _register_error_handlers(app)
    _register_commands(app)
    init_rate_limits(app, limiter)
    _init_scheduler(app)
    return app


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = app.config.get("CORS_ORIGINS", "*")
    if origins and origins != "*":
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])
    else:
        CORS(app)

    @app.before_request
    def _reject_oversized_body():
        limit = app.config.get("MAX_CONTENT_LENGTH")
        if limit and request.content_length and request.content_length > limit:
            abort(413)


def _init_database(app):
    for module in _MODEL_MODULES:
        importlib.import_module(module)

    # Production schemas are owned by Flask-Migrate (``flask db upgrade``)
    if not (app.debug or app.testing):
        return
    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:
            app.logger.warning("Could not create tables: %s", exc)


def _register_blueprints(app):
    from decision_engine.blueprints.decision_bp import decision_bp
    from decision_engine.blueprints.scheduler_bp import scheduler_bp

    app.register_blueprint(decision_bp)
    app.register_blueprint(scheduler_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Decision Engine"}


def _register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(_error):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def payload_too_large(_error):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(429)
    def rate_limited(error):
        return {"error": "Too many requests", "retry_after": error.description}, 429

    @app.errorhandler(500)
    def server_error(error):
        logger.error("Unhandled server error: %s", error, exc_info=True)
        return {"error": "Internal server error"}, 500


def _register_commands(app):
    @app.cli.command("process-transitions")
    def process_transitions_command():
        """Apply every due phase transition once (for cron or a platform scheduler)."""
        from decision_engine.services.transition_service import process_due_transitions

        summary = process_due_transitions()
        logger.info("Transitions processed=%s skipped=%s failed=%s",
                    summary.processed, summary.skipped, summary.failed)
        for failure in summary.errors:
            logger.warning("Transition %s failed: %s", failure.transition_id, failure.error,
                           extra={"transition_id": failure.transition_id})


def _init_scheduler(app):
    from decision_engine.services.scheduler_service import SchedulerService

    for module in _JOB_MODULES:
        importlib.import_module(module)
    SchedulerService.init_app(app)
