from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta

# Point the app at a throwaway SQLite file before anything imports database.py.
_TMP_DIR = tempfile.mkdtemp(prefix="review-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from database import Base, SessionLocal, engine  # noqa: E402
from main import app  # noqa: E402
from models import ROLE_ADMIN, ROLE_USER, User  # noqa: E402
from routers import auth as auth_module  # noqa: E402
from routers import projects as projects_module  # noqa: E402
from routers.auth import create_token, hash_password  # noqa: E402
from utils.otp_service import OtpManager  # noqa: E402
from utils.rate_limit import limiter  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def _fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def _reset_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def otp_manager(clock):
    manager = OtpManager.in_memory(clock=clock)
    previous = app.state.otp_manager
    app.state.otp_manager = manager
    yield manager
    app.state.otp_manager = previous


@pytest.fixture
def outbox(monkeypatch):
    """Captures every email the routers try to send."""
    sent = []

    def _capture(kind):
        def _send(**kwargs):
            sent.append({"kind": kind, **kwargs})

        return _send

    monkeypatch.setattr(auth_module, "send_signup_otp_email", _capture("signup"))
    monkeypatch.setattr(auth_module, "send_password_reset_email", _capture("reset"))
    monkeypatch.setattr(projects_module, "send_review_email", _capture("review"))
    return sent


@pytest.fixture
def client(otp_manager, outbox):
    return TestClient(app)


@pytest.fixture
def make_user(db):
    def _make(email: str = "alice@x.com", *, password: str = "secret123", role: str = ROLE_USER, name: str = "Alice"):
        user = User(name=name, email=email, number="5550100", password_hash=hash_password(password), role=role)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


def auth_header(user: User) -> dict:
    return {"Authorization": f"Bearer {create_token(user_id=user.id, role=user.role)}"}


@pytest.fixture
def admin(make_user):
    return make_user("admin@x.com", role=ROLE_ADMIN, name="Admin")


@pytest.fixture
def headers():
    return auth_header
