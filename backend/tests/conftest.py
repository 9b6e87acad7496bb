import os

# Settings are read at import time; make sure the app never reaches for Postgres or real secrets.
os.environ.setdefault("TOKEN_SECRET", "test_token_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("EMAIL_ENABLED", "false")

from dataclasses import dataclass, field

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.base import Base
from app.core import config as app_config
from app.core.database import get_db
from app.services import dispatcher as dispatcher_module
from app.services.dispatcher import DispatchResult
from app.services.rate_limiter import reset_rate_limiter

# Import models so they register with SQLAlchemy metadata.
from app.models.user import User
from app.models.verification_token import VerificationToken  # noqa: F401


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # The in-memory DB persists across tests with StaticPool. Reset schema per test.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests sometimes tweak global settings (app_config.settings.*). Because that object is
    process-global, restore values after each test and start every test with a fresh limiter.
    """
    keys = [
        "TOKEN_SECRET",
        "VERIFICATION_TOKEN_TTL_MINUTES",
        "ISSUANCE_MAX_ATTEMPTS",
        "RATE_LIMIT_ENABLED",
        "RATE_LIMIT_BACKEND",
        "RATE_LIMIT_ISSUANCE_MAX_REQUESTS",
        "RATE_LIMIT_ISSUANCE_WINDOW_SECONDS",
        "RATE_LIMIT_VERIFY_MAX_REQUESTS",
        "RATE_LIMIT_VERIFY_WINDOW_SECONDS",
        "DDB_RATE_LIMIT_TABLE",
        "AWS_REGION",
        "EMAIL_ENABLED",
        "EMAIL_PROVIDER",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    reset_rate_limiter()
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)
        reset_rate_limiter()
        dispatcher_module.reset_dispatcher()


@dataclass
class FakeDispatcher:
    """Captures every dispatched URL so tests can use the plaintext token."""

    fail: bool = False
    name: str = "fake"
    sent: list[dict] = field(default_factory=list)

    def dispatch(self, email: str, verification_url: str, *, purpose: str) -> DispatchResult:
        self.sent.append({"email": email, "url": verification_url, "purpose": purpose})
        if self.fail:
            return DispatchResult(success=False, error="provider down")
        return DispatchResult(success=True, message_id=f"msg_{len(self.sent)}")

    @property
    def last_token(self) -> str:
        return self.sent[-1]["url"].rsplit("/", 1)[-1]


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    fake = FakeDispatcher()
    monkeypatch.setattr(dispatcher_module, "_dispatcher", fake)
    return fake


@pytest.fixture()
def app(db_session):
    import app.main as main

    fastapi_app = main.app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def users(db_session):
    """
    Two distinct active, unverified users.
    """
    user_a = User(email="alice@example.com", name="Alice", is_active=True, is_email_verified=False)
    user_b = User(email="bob@example.com", name="Bob", is_active=True, is_email_verified=False)
    db_session.add_all([user_a, user_b])
    db_session.commit()
    db_session.refresh(user_a)
    db_session.refresh(user_b)
    return user_a, user_b
