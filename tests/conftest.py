"""
Shared pytest fixtures for the Coffee Processing Core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - method: Pre-created "Washed" method with Drying(1) / Hulling(2) / Grading(3)
    - batch: Pre-created NotStarted batch on that method
"""

import pytest

from coffee_processing import create_app
from coffee_processing.models import db as _db
from coffee_processing.services import batch_service, stage_catalog
from coffee_processing.services.retry_reconciliation import invalidate_all

SCENARIO_STAGES = ["Drying", "Hulling", "Grading"]


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
        # DB is recreated per test and ids are reused; the reconciliation
        # memo is keyed by batch id.
        invalidate_all()
        yield
        invalidate_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def method():
    """Washed method with the Drying → Hulling → Grading catalog."""
    return stage_catalog.define_method("WET", "Washed", stages=SCENARIO_STAGES)


@pytest.fixture()
def stages(method):
    return stage_catalog.stages_for(method.id)


@pytest.fixture()
def batch(method):
    """NotStarted batch of 100 kg on the washed method."""
    return batch_service.create_batch({
        "method_id": method.id,
        "input_quantity": 100,
        "input_unit": "kg",
        "farmer_id": "farmer-1",
    })
