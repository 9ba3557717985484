"""
Capacity Insights
Flask Application Factory.

Usage:
    from capacity_insights import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os
from datetime import date

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from capacity_insights.config import config
from capacity_insights.middleware.jwt_auth import init_jwt_middleware
from capacity_insights.middleware.logging_config import configure_logging
from capacity_insights.middleware.rate_limiter import init_rate_limits
from capacity_insights.models import db

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
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to the APP_ENV env var, or "development".
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can refuse to start without its secrets
    app.config.from_object(config[config_name]())

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

    # ── JWT auth middleware ──────────────────────────────────────────────
    init_jwt_middleware(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from capacity_insights.models import analytics as _analytics_models  # noqa: F401
    from capacity_insights.models import auth as _auth_models            # noqa: F401
    from capacity_insights.models import planning as _planning_models    # noqa: F401
    from capacity_insights.models import scheduling as _scheduling_models  # noqa: F401
    from capacity_insights.models import weather as _weather_models      # noqa: F401

    # ── Auto-create tables for local SQLite (migrations own PostgreSQL) ──
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        with app.app_context():
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from capacity_insights.blueprints.cron_bp import cron_bp
    from capacity_insights.blueprints.health_bp import health_bp
    from capacity_insights.blueprints.insights_bp import insights_bp

    app.register_blueprint(cron_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(insights_bp)

    _register_cli(app)
    _register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("capacity_insights.services.scheduled_jobs")
    from capacity_insights.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app


def _register_cli(app):

    @app.cli.command("generate-snapshots")
    @click.option("--date", "as_of", type=click.DateTime(formats=["%Y-%m-%d"]),
                  default=None, help="Snapshot date (default: today)")
    def generate_snapshots_cmd(as_of):
        """Capture phase snapshots for all active tenants."""
        from capacity_insights.services.pipeline import SNAPSHOT_COUNT_KEYS, PipelineOrchestrator
        result = PipelineOrchestrator.from_config().run_snapshots(
            _cli_date(as_of), trigger="cli",
        )
        click.echo(result.to_response(SNAPSHOT_COUNT_KEYS))

    @app.cli.command("generate-insights")
    @click.option("--date", "as_of", type=click.DateTime(formats=["%Y-%m-%d"]),
                  default=None, help="Insight date (default: today)")
    def generate_insights_cmd(as_of):
        """Build phase, project and tenant insights for all active tenants."""
        from capacity_insights.services.pipeline import INSIGHT_COUNT_KEYS, PipelineOrchestrator
        result = PipelineOrchestrator.from_config().run_insights(
            _cli_date(as_of), trigger="cli",
        )
        click.echo(result.to_response(INSIGHT_COUNT_KEYS))

    @app.cli.command("run-job")
    @click.argument("job_name")
    @click.option("--force", is_flag=True, help="Run even if the job is disabled")
    def run_job_cmd(job_name, force):
        """Run a registered scheduled job (phase_snapshots, insight_generation)."""
        from capacity_insights.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        click.echo(SchedulerService.run_job(job_name, force=force))


def _cli_date(value) -> date | None:
    return value.date() if value is not None else None


def _register_error_handlers(app):

    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith("/api/"):
            return {"error": "Not found", "path": request.path}, 404
        return {"error": "Not found"}, 404

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
