"""
Shared pytest fixtures for the QA Lifecycle Hub test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - manager / tester / other_tester / troubleshooter / viewer: committed Users
    - auth: Authorization header builder for a User
    - connect: Socket.IO test client factory, disconnected on teardown
"""

import pytest

from qahub import create_app, socketio
from qahub.models import db as _db
from qahub.models.auth import (
    ROLE_TEST_MANAGER,
    ROLE_TESTER,
    ROLE_TROUBLESHOOTER,
    ROLE_VIEWER,
    User,
)
from qahub.services.jwt_service import generate_access_token


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


# ── Users ────────────────────────────────────────────────────────────────


def _make_user(username: str, role: str, department: str | None = None, is_active: bool = True) -> User:
    """Create and commit a User row."""
    user = User(
        username=username,
        email=f"{username}@qahub.test",
        first_name=username.capitalize(),
        role=role,
        department=department,
        is_active=is_active,
    )
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def make_user():
    """make_user(username, role, department=None, is_active=True) -> committed User"""
    return _make_user


@pytest.fixture()
def manager():
    return _make_user("maria", ROLE_TEST_MANAGER, department="QA")


@pytest.fixture()
def tester():
    return _make_user("tom", ROLE_TESTER, department="QA")


@pytest.fixture()
def other_tester():
    return _make_user("tara", ROLE_TESTER, department="Finance")


@pytest.fixture()
def troubleshooter():
    return _make_user("trent", ROLE_TROUBLESHOOTER, department="DBA")


@pytest.fixture()
def viewer():
    return _make_user("vic", ROLE_VIEWER)


@pytest.fixture()
def auth():
    """auth(user) -> {"Authorization": "Bearer <jwt>"}"""
    def _headers(user):
        return {"Authorization": f"Bearer {generate_access_token(user.id, user.role)}"}
    return _headers


# ── Real-time ────────────────────────────────────────────────────────────


@pytest.fixture()
def connect(app):
    """connect(user) -> connected Socket.IO test client for that user."""
    clients = []

    def _connect(user, **kwargs):
        kwargs.setdefault("auth", {"token": generate_access_token(user.id, user.role)})
        sc = socketio.test_client(app, **kwargs)
        clients.append(sc)
        return sc

    yield _connect

    for sc in clients:
        if sc.is_connected():
            sc.disconnect()

