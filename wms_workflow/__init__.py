"""
WMS Workflow Automation Engine
Flask Application Factory.

Usage:
    from wms_workflow import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event

from wms_workflow.config import config
from wms_workflow.middleware.logging_config import configure_logging
from wms_workflow.models import db

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None, document_gateway=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        document_gateway: Optional DocumentGateway for deployments that own
                          their document tables.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)

    from wms_workflow.models import approval as _approval_models        # noqa: F401
    from wms_workflow.models import directory as _directory_models      # noqa: F401
    from wms_workflow.models import document as _document_models        # noqa: F401
    from wms_workflow.models import notification as _notification_models  # noqa: F401
    from wms_workflow.models import scheduling as _scheduling_models    # noqa: F401
    from wms_workflow.models import workflow as _workflow_models        # noqa: F401

    os.makedirs(app.instance_path, exist_ok=True)

    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    from wms_workflow.services.engine_context import AutomationEngine
    engine = AutomationEngine(app, document_gateway=document_gateway)

    from wms_workflow.blueprints.approval_bp import approval_bp
    from wms_workflow.blueprints.notification_bp import notification_bp
    from wms_workflow.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(notification_bp)

    @app.route("/health")
    def health():
        return {"status": "ok", "dispatch_mode": engine.bus.mode}

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found"}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    # ── Seed commands ────────────────────────────────────────────────────
    @app.cli.command("seed-workflow-templates")
    def seed_workflow_templates_cmd():
        """Seed the installable workflow templates."""
        from wms_workflow.services.workflow_templates import seed_workflow_templates
        count = seed_workflow_templates()
        db.session.commit()
        logger.info("Seeded %s new workflow templates.", count)

    @app.cli.command("seed-chain-rules")
    def seed_chain_rules_cmd():
        """Seed the document chain notification rules (one workflow per entity type)."""
        from wms_workflow.services.workflow_templates import seed_chain_rules
        created = seed_chain_rules()
        db.session.commit()
        engine.cache.invalidate()
        logger.info("Seeded %s chain workflows, %s chain rules.", created["workflows"], created["rules"])

    # ── Scheduler (import jobs to register them) ─────────────────────────
    importlib.import_module("wms_workflow.services.scheduled_jobs")
    from wms_workflow.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    with app.app_context():
        engine.scheduled_rules.initialize()
    if app.config.get("SCHEDULER_ENABLED"):
        SchedulerService.start()

    return app
