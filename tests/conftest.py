"""
CraftCtrl - Test Configuration

Pytest fixtures for the auth core and the HTTP API.
Provides an in-memory database, a manually advanced clock, a recording
mailer, wired services and user fixtures.
"""

import os

# Must be set before craftctrl.config is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("RESET_COOLDOWN_MINUTES", "5")

from datetime import datetime, timedelta
from typing import Generator, List, Optional

import pyotp
import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from craftctrl.app import create_app, seed_defaults, wire_services
from craftctrl.auth.clock import Clock, IdGenerator
from craftctrl.auth.database import get_engine, get_session_factory, init_db
from craftctrl.auth.mailer import ResetMailer
from craftctrl.auth.models import User
from craftctrl.auth.password import hash_password
from craftctrl.auth.permissions import PermissionResolver
from craftctrl.auth.service import AuthenticatedUser, AuthService
from craftctrl.auth.sessions import SessionManager
from craftctrl.auth.store import CredentialStore
from craftctrl.auth.tokens import TokenCodec
from craftctrl.auth.two_factor import TwoFactorService
from craftctrl.auth.users import UserService
from craftctrl.config import settings


TEST_DATABASE_URL = "sqlite:///:memory:"
DEFAULT_PASSWORD = "secret1"


class ManualClock(Clock):
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = (start or Clock().now()).replace(microsecond=0)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now


class RecordingMailer(ResetMailer):
    """Mailer that keeps reset mails in memory instead of sending them."""

    def __init__(self):
        super().__init__(api_url="http://api.test", frontend_url="http://dashboard.test")
        self.sent: List[dict] = []

    async def send_password_reset(self, email, username, token, ip_address=None, user_agent=None):
        self.sent.append({
            "email": email,
            "username": username,
            "token": token,
            "link": self.build_reset_link(token),
            "ip_address": ip_address,
            "user_agent": user_agent,
        })
        return True


# =============================================================================
# Infrastructure
# =============================================================================

@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = get_engine(TEST_DATABASE_URL)
    init_db(engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ids() -> IdGenerator:
    return IdGenerator()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def store(test_engine, clock, ids) -> CredentialStore:
    """Store over the test database with the catalog and default admin seeded."""
    store = CredentialStore(get_session_factory(test_engine), clock, ids)
    seed_defaults(store, settings)
    return store


# =============================================================================
# Services
# =============================================================================

@pytest.fixture
def session_manager(store, clock, ids) -> SessionManager:
    return SessionManager(store, clock, ids)


@pytest.fixture
def resolver(store) -> PermissionResolver:
    return PermissionResolver(store)


@pytest.fixture
def two_factor(store, clock) -> TwoFactorService:
    return TwoFactorService(store, clock)


@pytest.fixture
def codec(clock, ids) -> TokenCodec:
    return TokenCodec(settings.SECRET_KEY, settings.JWT_ALGORITHM, clock, ids)


@pytest.fixture
def auth_service(store, session_manager, resolver, two_factor, codec, mailer, clock, ids) -> AuthService:
    return AuthService(
        store,
        session_manager,
        resolver,
        two_factor,
        codec,
        mailer,
        clock=clock,
        ids=ids,
        bcrypt_rounds=settings.BCRYPT_ROUNDS,
        reset_cooldown_minutes=5,
    )


@pytest.fixture
def user_service(store) -> UserService:
    return UserService(store, bcrypt_rounds=settings.BCRYPT_ROUNDS)


@pytest.fixture
def client(test_engine, clock, ids, mailer) -> Generator[TestClient, None, None]:
    """Test client over a fresh app wired to the test database and clock."""
    app = create_app(settings)
    store = wire_services(app, test_engine, settings, clock=clock, ids=ids, mailer=mailer)
    seed_defaults(store, settings)

    with TestClient(app) as c:
        yield c


# =============================================================================
# Users
# =============================================================================

@pytest.fixture
def make_user(store):
    """Factory creating users directly in the store."""
    def _make_user(
        username: str,
        password: str = DEFAULT_PASSWORD,
        email: Optional[str] = None,
        **flags,
    ) -> User:
        user = store.create_user(
            username=username,
            email=email or f"{username}@test.com",
            password_hash=hash_password(password),
            is_super_admin=flags.pop("is_super_admin", False),
            is_active=flags.pop("is_active", True),
            change_password=flags.pop("change_password", False),
        )
        if flags:
            user = store.update_user(user.id, **flags)
        return user

    return _make_user


@pytest.fixture
def bob(make_user) -> User:
    """Active user without 2FA, password 'secret1'."""
    return make_user("bob")


@pytest.fixture
def admin(store) -> User:
    """The seeded super-admin."""
    return store.get_user_by_username(settings.DEFAULT_ADMIN_USERNAME)


@pytest.fixture
def inactive_user(make_user) -> User:
    return make_user("ghost", is_active=False)


@pytest.fixture
def totp_user(make_user, clock):
    """User with confirmed 2FA. Returns (user, pyotp.TOTP)."""
    secret = pyotp.random_base32()
    user = make_user("carol", two_factor_secret=secret, two_factor_enabled=True)
    return user, pyotp.TOTP(secret)


def current_code(totp: pyotp.TOTP, clock: Clock) -> str:
    return totp.at(clock.timestamp())


def wrong_code(totp: pyotp.TOTP, clock: Clock) -> str:
    """A six-digit code outside the accepted window at the clock's time."""
    for candidate in ("000000", "111111", "222222", "333333"):
        if not totp.verify(candidate, for_time=clock.timestamp(), valid_window=1):
            return candidate
    raise AssertionError("no rejected candidate code")


def actor_for(user: User, session_id: str = "test-session") -> AuthenticatedUser:
    """Caller identity for service calls that take an actor."""
    return AuthenticatedUser(
        user_id=user.id,
        username=user.username,
        email=user.email,
        is_super_admin=user.is_super_admin,
        session_id=session_id,
        token_id="test-jti",
        permissions=[],
    )


def login_user(client: TestClient, username: str, password: str = DEFAULT_PASSWORD) -> Optional[dict]:
    """Helper function to login and return the response body."""
    response = client.post(
        "/api/v1/auth/login",
        json={"username": username, "password": password},
    )
    return response.json() if response.status_code == 200 else None


def auth_headers(access_token: str) -> dict:
    """Create authorization headers for authenticated requests."""
    return {"Authorization": f"Bearer {access_token}"}
