"""
authcore - Test Configuration

Pytest fixtures: in-memory database, services, users and an app client.
Signing keys and a low bcrypt work factor are set before authcore is
imported so the module-level settings pick them up.
"""

import os

os.environ["SECRET_KEY"] = "test-access-signing-key"
os.environ["REFRESH_SECRET_KEY"] = "test-refresh-signing-key"
os.environ["BCRYPT_WORK_FACTOR"] = "4"
os.environ["ENVIRONMENT"] = "production"
os.environ["LOG_JSON"] = "true"
# TestClient reports its socket peer as "testclient"; treat it as our proxy
os.environ["TRUSTED_PROXIES"] = "[\"testclient\"]"

from datetime import datetime
from typing import Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from authcore.app import create_app
from authcore.audit.activity import ActivityLog
from authcore.auth.database import get_engine, init_db
from authcore.auth.models import Role, User
from authcore.auth.otp import OtpChallengeManager
from authcore.auth.password import hash_password
from authcore.auth.rate_limit import RateLimiter
from authcore.auth.refresh import RefreshRotationEngine
from authcore.auth.service import AuthService
from authcore.auth.tokens import issue_access_token
from authcore.config import Settings, settings

TEST_DATABASE_URL = "sqlite:///:memory:"
TEST_PASSWORD = "CorrectHorse9"


class RecordingNotifier:
    """Keeps delivered codes so tests can answer challenges."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, str]] = []

    def send_login_code(self, email: str, code: str, ip_address: str, expires_at: datetime) -> None:
        self.sent.append((email, code, ip_address))

    @property
    def last_code(self) -> Optional[str]:
        return self.sent[-1][1] if self.sent else None


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[dict] = []

    def record(self, action, user_id, entity_type, entity_id, metadata) -> None:
        self.events.append(
            {"action": action, "user_id": user_id, "entity_type": entity_type, "entity_id": entity_id}
        )

    def actions(self) -> List[str]:
        return [e["action"] for e in self.events]


@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh test database engine for each test."""
    engine = get_engine(TEST_DATABASE_URL)
    init_db(engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter()


@pytest.fixture
def otp_manager(limiter, notifier) -> OtpChallengeManager:
    return OtpChallengeManager(limiter, notifier, settings)


@pytest.fixture
def rotation() -> RefreshRotationEngine:
    return RefreshRotationEngine(settings)


@pytest.fixture
def auth_service(limiter, otp_manager, rotation, sink) -> AuthService:
    return AuthService(limiter, otp_manager, rotation, ActivityLog(sink), settings)


@pytest.fixture
def make_user(db_session):
    """Factory for users; all share TEST_PASSWORD unless given one."""

    def _make(
        email: str,
        role: Role = Role.SUPPORT,
        password: str = TEST_PASSWORD,
        is_active: bool = True,
        **fields,
    ) -> User:
        user = User(
            email=email,
            password_hash=hash_password(password),
            role=role,
            is_active=is_active,
            **fields,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def support_user(make_user) -> User:
    return make_user("mario.rossi@example.com", Role.SUPPORT, first_name="Mario", last_name="Rossi")


@pytest.fixture
def admin_user(make_user) -> User:
    return make_user("admin@example.com", Role.ADMIN, first_name="Ada")


@pytest.fixture
def inactive_user(make_user) -> User:
    return make_user("former@example.com", Role.PM, is_active=False)


def build_client(engine, notifier, sink, app_settings: Settings = settings) -> TestClient:
    app = create_app(
        settings=app_settings,
        engine=engine,
        notifier=notifier,
        activity=ActivityLog(sink),
    )
    # https so the Secure token cookies round-trip
    return TestClient(app, base_url="https://testserver")


@pytest.fixture(scope="function")
def client(test_engine, notifier, sink) -> Generator[TestClient, None, None]:
    """App client on the test database, production mode (trust check on)."""
    with build_client(test_engine, notifier, sink) as c:
        yield c


def auth_headers(user: User, ip_address: Optional[str] = None) -> dict:
    """Bearer headers with a freshly minted access token."""
    headers = {"Authorization": f"Bearer {issue_access_token(user)}"}
    if ip_address:
        headers["X-Forwarded-For"] = ip_address
    return headers


def login(client: TestClient, email: str, password: str = TEST_PASSWORD, ip_address: str = "203.0.113.10"):
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
        headers={"X-Forwarded-For": ip_address},
    )
