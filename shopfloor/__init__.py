"""
Shopfloor Planner
Flask Application Factory.

Usage:
    from shopfloor import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
    app = create_app("testing", {"SQLALCHEMY_DATABASE_URI": "sqlite:///x.db"})
"""

import logging
import os

from flask import Flask, abort, request
from flask_cors import CORS
from flask_migrate import Migrate
from sqlalchemy import event as _sa_event, engine as _sa_engine
from sqlalchemy.exc import SQLAlchemyError

from shopfloor.config import config
from shopfloor.core.exceptions import NotFoundError, PlatformError
from shopfloor.middleware.logging_config import configure_logging
from shopfloor.middleware.rate_limiter import init_rate_limits
from shopfloor.models import db
from shopfloor.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _serialize_sqlite_writers(engine):
    """Make every transaction on a file-backed SQLite engine BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, so two approvals could both
    read "one pending left" before either writes.  Taking the write lock at
    BEGIN gives the same serialisation SELECT ... FOR UPDATE gives on
    PostgreSQL.  In-memory databases run on one shared connection and are
    left alone.
    """
    if engine.dialect.name != "sqlite" or engine.url.database in (None, "", ":memory:"):
        return

    @_sa_event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @_sa_event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


migrate = Migrate()


def register_error_handlers(app):
    """Map service exceptions and HTTP errors to the standard JSON body."""

    @app.errorhandler(PlatformError)
    def _platform_error(e):
        if isinstance(e, NotFoundError):
            logger.debug("Not found: %s", e)
        else:
            logger.info("Request rejected code=%s: %s", e.code, e.message,
                        extra={"path": request.path, "method": request.method})
        return api_error(e.code, e.message, details=e.details or None)

    @app.errorhandler(SQLAlchemyError)
    def _database_error(e):
        db.session.rollback()
        logger.exception("Database error on %s %s", request.method, request.path)
        return api_error(E.DATABASE, "Database error")

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def too_large(e):
        return api_error(E.VALIDATION_INVALID, "Request body too large", status=413)

    @app.errorhandler(415)
    def unsupported_media(e):
        return api_error(E.VALIDATION_INVALID, "Content-Type must be application/json", status=415)

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def create_app(config_name=None, overrides=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        overrides: Optional mapping applied on top of the config class
                   (tests use it for file databases and rate limits).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    from shopfloor.services.notification import DatabaseNotifier
    app.extensions.setdefault("notifier", DatabaseNotifier())

    # ── Request guards (input length + Content-Type) ─────────────────────

    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Rate limiting (runs before every /api/ route) ───────────────────
    init_rate_limits(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from shopfloor.models import auth as _auth_models                      # noqa: F401
    from shopfloor.models import ppic as _ppic_models                      # noqa: F401
    from shopfloor.models import operation_plan as _operation_plan_models  # noqa: F401
    from shopfloor.models import notification as _notification_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        _serialize_sqlite_writers(db.engine)
        if config_name != "production":
            db.create_all()
            app.logger.debug("db.create_all() completed")

    # ── Blueprints ───────────────────────────────────────────────────────
    from shopfloor.blueprints.operation_plan_bp import operation_plan_bp
    from shopfloor.blueprints.ppic_bp import ppic_bp
    from shopfloor.blueprints.notification_bp import notification_bp

    app.register_blueprint(operation_plan_bp)
    app.register_blueprint(ppic_bp)
    app.register_blueprint(notification_bp)

    register_error_handlers(app)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Shopfloor Planner"}

    return app
