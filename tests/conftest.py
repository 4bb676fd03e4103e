"""
Shared pytest fixtures for the Decision Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - admin / member / viewer: Actors for service-level calls
    - simple_process: process created from the built-in "simple" template
    - make_instance: factory for instances of ``simple_process``

Factories commit: the transition processor rolls the session back between
its scan and apply stages, so uncommitted fixtures would disappear.
"""

import pytest

from decision_engine import create_app
from decision_engine.models import db as _db
from decision_engine.services import instance_service
from decision_engine.services.access import Actor, SYSTEM_ACTOR


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Actors ───────────────────────────────────────────────────────────────


@pytest.fixture()
def admin():
    return Actor(user_id="admin-1", role="admin")


@pytest.fixture()
def member():
    return Actor(user_id="member-1", role="editor")


@pytest.fixture()
def viewer():
    return Actor(user_id="viewer-1", role="viewer")


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def simple_process():
    """A process built from the "simple" participatory budgeting template."""
    return instance_service.create_process_from_template("simple", SYSTEM_ACTOR, name="City Budget")


@pytest.fixture()
def make_instance(simple_process):
    """Factory: create (and optionally publish) an instance of ``simple_process``.

        inst = make_instance(phases=PAST_PHASE_DATES, publish=True)
    """

    def _make(*, name="Budget 2026", phases=None, publish=False, **extra):
        data = {"name": name, "phases": phases or []}
        data.update(extra)
        instance = instance_service.create_instance(simple_process.id, data, SYSTEM_ACTOR)
        if publish:
            instance_service.publish_instance(instance.id, SYSTEM_ACTOR)
        return instance

    return _make
