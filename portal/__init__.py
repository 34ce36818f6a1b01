"""
Internal Portal: Request Approval Workflow

``create_app(config_name)`` builds the Flask application: logging, the
SQLAlchemy/Migrate/Limiter/CORS extensions, request guards, the workflow
blueprint, JSON error pages and the ``update-vacation-statuses`` command.
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from portal.config import config
from portal.middleware.logging_config import configure_logging
from portal.middleware.rate_limiter import init_rate_limits
from portal.middleware.timing import init_request_timing
from portal.models import db

logger = logging.getLogger(__name__)

# Test suites that bulk drop/recreate tables switch this off
_SQLITE_FK_ENFORCEMENT = True

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    if _SQLITE_FK_ENFORCEMENT and "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: "development", "testing" or "production".
                     Defaults to the APP_ENV env var, then "development".
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name or os.getenv("APP_ENV", "development")]())

    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)
    _init_request_guards(app)
    _init_schema(app)

    from portal.blueprints.requests_bp import requests_bp
    app.register_blueprint(requests_bp)

    app.add_url_rule("/api/v1/health", "health", lambda: {"status": "ok", "app": "Internal Portal"})
    _init_cli(app)
    _init_error_pages(app)

    # Needs the blueprints registered
    init_rate_limits(app, limiter)
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


def _init_request_guards(app):
    """Reject oversized bodies (413) and non-JSON writes to the API (415)."""

    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and (request.content_length or 0) > max_len:
            abort(413, description="Request body too large")
        if (
            request.method in ("POST", "PUT", "PATCH")
            and request.path.startswith("/api/")
            and request.data
            and "json" not in (request.content_type or "")
        ):
            abort(415, description="Content-Type must be application/json")


def _init_schema(app):
    # Register every table on the metadata before create_all / Alembic autogenerate
    from portal.models import audit, notification, org, request, request_template, vacation  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:
            app.logger.warning("db.create_all() failed: %s", exc)
        else:
            app.logger.info("Database schema ready")


def _init_cli(app):
    @app.cli.command("update-vacation-statuses")
    @click.option("--date", "on_date", default=None, help="Run as of YYYY-MM-DD instead of today.")
    def update_vacation_statuses_cmd(on_date):
        """Activate started vacations and complete finished ones (run daily)."""
        from portal.services.vacation_schedule_service import update_vacation_statuses
        from portal.utils.helpers import parse_date_input

        counts = update_vacation_statuses(parse_date_input(on_date))
        logger.info("Vacation statuses: %(activated)s activated, %(completed)s completed", counts)
        click.echo(f"activated={counts['activated']} completed={counts['completed']}")


def _init_error_pages(app):
    @app.errorhandler(404)
    def _not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def _too_large(e):
        return {"error": e.description}, 413

    @app.errorhandler(415)
    def _unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500
