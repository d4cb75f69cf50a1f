"""
Procurement Platform
Flask Application Factory.

Usage:
    from procurement import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from procurement.config import config
from procurement.models import db
from procurement.middleware.logging_config import configure_logging
from procurement.middleware.timing import init_request_timing
from procurement.middleware.rate_limiter import init_rate_limits
from procurement.middleware.jwt_auth import init_jwt_middleware
from procurement.middleware.tenant_context import init_tenant_context

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


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
    default_limits=[],                     # no global limit: apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


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
    app.config.from_object(config[config_name])

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

    # ── Request timing, then identity: JWT → tenant context ──────────────
    init_request_timing(app)
    init_jwt_middleware(app)
    init_tenant_context(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from procurement.models import auth as _auth_models              # noqa: F401
    from procurement.models import rfp as _rfp_models                # noqa: F401
    from procurement.models import workflow as _workflow_models      # noqa: F401
    from procurement.models import scoring as _scoring_models        # noqa: F401
    from procurement.models import audit as _audit_models            # noqa: F401
    from procurement.models import notification as _notification_models  # noqa: F401
    from procurement.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from procurement.blueprints.health_bp import health_bp
    from procurement.blueprints.workflow_bp import workflow_bp
    from procurement.blueprints.approval_bp import approval_bp
    from procurement.blueprints.scoring_bp import scoring_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(scoring_bp)

    # ── Event subscribers (in-app notifications) ─────────────────────────
    import importlib
    importlib.import_module("procurement.services.notification")

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-default-workflows")
    @click.option("--tenant-id", type=int, required=True, help="Tenant to seed.")
    def seed_default_workflows_cmd(tenant_id):
        """Install the Standard and Emergency RFP workflows for a tenant."""
        from procurement.services.workflow_registry import seed_default_workflows
        count = seed_default_workflows(tenant_id)
        logger.info("Seeded %s default workflows for tenant %s.", count, tenant_id)
        click.echo(f"Seeded {count} workflow(s).")

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run a registered scheduled job once (e.g. sla_sweep)."""
        from procurement.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(job_name)
        click.echo(f"{result['job_name']}: {result['status']} ({result['duration_ms']} ms)")
        if result.get("error"):
            click.echo(result["error"], err=True)

    # ── Error handlers ───────────────────────────────────────────────────
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

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("procurement.services.scheduled_jobs")
    from procurement.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    try:
        _SchedulerSvc.ensure_jobs_registered()
    except Exception as e:
        app.logger.warning("Scheduled job registration skipped: %s", e)

    return app
