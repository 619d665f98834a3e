"""
Shared pytest fixtures for the workflow automation test suite.

Provides:
    - app: Flask application (session-scoped, testing config: in-memory
      SQLite, sync event dispatch, inline action execution)
    - session: Per-test DB recreate + rule cache reset (autouse)
    - client: Flask test client
    - engine: the app's AutomationEngine
    - make_employee / make_workflow / make_rule / make_levels: builders
"""

import pytest

from wms_workflow import create_app
from wms_workflow.models import db as _db
from wms_workflow.models.approval import ApprovalLevelConfig
from wms_workflow.models.directory import Employee


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    yield application
    application.extensions["automation"].shutdown()


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context, fresh tables, empty rule cache."""
    engine = app.extensions["automation"]
    with app.app_context():
        _db.drop_all()
        _db.create_all()
        engine.cache.invalidate()
        yield
        _db.session.rollback()
        engine.cache.invalidate()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def engine(app):
    return app.extensions["automation"]


# ── Builders ─────────────────────────────────────────────────────────────


@pytest.fixture()
def make_employee():
    def _make(emp_id, role, email=None, active=True):
        emp = Employee(id=emp_id, full_name=emp_id.replace("-", " ").title(), system_role=role,
                       email=email or f"{emp_id}@wms.local", is_active=active)
        _db.session.add(emp)
        _db.session.commit()
        return emp
    return _make


@pytest.fixture()
def make_levels():
    """Create approval level configs: make_levels("mi", [(0, 10000, "warehouse_supervisor", 24), ...])."""
    def _make(document_type, brackets):
        rows = []
        for min_amount, max_amount, role, sla_hours in brackets:
            row = ApprovalLevelConfig(document_type=document_type, min_amount=min_amount,
                                      max_amount=max_amount, approver_role=role, sla_hours=sla_hours)
            _db.session.add(row)
            rows.append(row)
        _db.session.commit()
        return rows
    return _make


@pytest.fixture()
def make_workflow(engine):
    def _make(name="Workflow", entity_type="mrrv", priority=0, **extra):
        return engine.store.create_workflow({"name": name, "entity_type": entity_type,
                                             "priority": priority, **extra})
    return _make


@pytest.fixture()
def make_rule(engine):
    def _make(workflow, trigger_event="document:status_changed", conditions=None, actions=None, **extra):
        return engine.store.create_rule(workflow.id, {
            "name": extra.pop("name", f"Rule on {trigger_event}"),
            "trigger_event": trigger_event,
            "conditions": conditions or {},
            "actions": actions or [],
            **extra,
        })
    return _make


@pytest.fixture()
def captured_events(engine):
    """Every event published on the bus during the test."""
    events = []
    sub = engine.bus.subscribe("*", events.append, name="test-capture")
    yield events
    engine.bus.unsubscribe(sub)
