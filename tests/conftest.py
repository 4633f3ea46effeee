"""
Shared pytest fixtures for the Shopfloor Planner test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - recorder: notifier double that records every event
    - creator / approvers: pre-created users
    - machines: three pre-created machines
"""

import pytest

from shopfloor import create_app
from shopfloor.models import db as _db
from shopfloor.models.auth import User
from shopfloor.models.operation_plan import ApproverRole
from shopfloor.models.ppic import Machine


class RecordingNotifier:
    """Notifier double: keeps (recipient, event_kind, payload) tuples."""

    def __init__(self):
        self.events = []

    def notify(self, recipient, event_kind, payload):
        self.events.append((recipient, event_kind, dict(payload)))

    def of_kind(self, event_kind):
        return [e for e in self.events if e[1] == event_kind]


class FailingNotifier:
    """Notifier double whose delivery always blows up."""

    def __init__(self):
        self.calls = 0

    def notify(self, recipient, event_kind, payload):
        self.calls += 1
        raise RuntimeError("mail server unreachable")


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
    from shopfloor.services.notification import DatabaseNotifier

    with app.app_context():
        app.extensions["notifier"] = DatabaseNotifier()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
    app.extensions["notifier"] = DatabaseNotifier()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def recorder(app):
    """Install a RecordingNotifier for the duration of the test."""
    notifier = RecordingNotifier()
    app.extensions["notifier"] = notifier
    return notifier


# ── Convenience fixtures ─────────────────────────────────────────────────


def _make_user(username, **kw):
    defaults = {
        "username": username,
        "email": f"{username}@shopfloor.test",
        "full_name": username.replace("_", " ").title(),
        "role": "operator",
        "is_active": True,
    }
    defaults.update(kw)
    user = User(**defaults)
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def creator():
    """Plan author."""
    return _make_user("plan_author", role="pem")


@pytest.fixture()
def approvers():
    """One active user per approver role: {ApproverRole: User}."""
    return {
        role: _make_user(f"approver_{role.value.lower()}", role=role.value.lower())
        for role in ApproverRole
    }


@pytest.fixture()
def machines():
    """Three machines: M1 (CNC-01), M2 (CNC-02), M3 (EDM-01)."""
    rows = [
        Machine(machine_code="CNC-01", machine_name="CNC Mill 1"),
        Machine(machine_code="CNC-02", machine_name="CNC Mill 2"),
        Machine(machine_code="EDM-01", machine_name="Wire EDM"),
    ]
    _db.session.add_all(rows)
    _db.session.commit()
    return rows



@pytest.fixture()
def failing_notifier(app):
    """Install a notifier that raises on every delivery."""
    notifier = FailingNotifier()
    app.extensions["notifier"] = notifier
    return notifier
