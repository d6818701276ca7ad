"""
tests/conftest.py -- Shared test fixtures for the orgaccess suite.

This module provides:
  - store / file_store: isolated AccountStore instances
  - make_account: helper that inserts an AccountRecord and returns it
  - FakeClock, FakeCredentialGateway, RecordingSender: in-memory collaborators
  - FakeIdentityProvider / provider: HTTP double for HttpCredentialGateway
    that only honours tokens it issued
  - otc_service / machine: a LocalOtcService and SessionStateMachine wired to the fakes
  - api_client: TestClient with a patched lifespan for endpoint tests

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread.

DEBUG and SERVICE_KEY must be set before any auth/core import so
get_settings() auto-generates SECRET_KEY instead of raising ValueError.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Union
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SERVICE_KEY", "test-service-key")
os.environ.setdefault("SEND_CODE_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from auth.errors import AuthError, ErrorKind
from auth.models import AccountRecord, Identity, Session
from auth.oracle import AccountStatusOracle
from auth.otc import LocalOtcService
from auth.session import SessionStateMachine
from auth.store import AccountStore, OtcLimits

SERVICE_KEY = os.environ["SERVICE_KEY"]

# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced wall clock (Unix seconds)."""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def utc(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)


class FakeCredentialGateway:
    """CredentialGateway double keyed by email.

    Set fail_with to an AuthError to make the next calls fail that way, or
    update_error to make update_password() refuse.
    """

    def __init__(self) -> None:
        self.users: dict[str, tuple[str, str]] = {}  # email -> (password, identity_id)
        self.session: Optional[Session] = None
        self.fail_with: Optional[AuthError] = None
        self.update_error: Optional[AuthError] = None
        self.refresh_result: Union[Session, AuthError, None, str] = "keep"
        self.sign_in_calls = 0
        self.sign_out_calls = 0
        self.updated_passwords: list[str] = []
        self.closed = False

    def add_user(self, email: str, password: str, identity_id: str) -> None:
        self.users[email] = (password, identity_id)

    def sign_in_with_password(self, email: str, password: str) -> Union[Session, AuthError]:
        self.sign_in_calls += 1
        if self.fail_with is not None:
            return self.fail_with
        known = self.users.get(email)
        if known is None or known[0] != password:
            return AuthError(ErrorKind.invalid_credentials)
        self.session = make_session(known[1], email)
        return self.session

    def sign_out(self) -> None:
        self.sign_out_calls += 1
        self.session = None

    def update_password(self, new_password: str) -> Optional[AuthError]:
        if self.update_error is not None:
            return self.update_error
        if self.session is None:
            return AuthError(ErrorKind.password_rejected, "No active session.")
        self.updated_passwords.append(new_password)
        for email, (_, identity_id) in list(self.users.items()):
            if identity_id == self.session.identity.id:
                self.users[email] = (new_password, identity_id)
        return None

    def refresh_session(self):
        if self.refresh_result != "keep":
            if self.refresh_result is None:
                self.session = None
            elif isinstance(self.refresh_result, Session):
                self.session = self.refresh_result
            return self.refresh_result
        return self.session

    def set_session(self, session: Session) -> None:
        self.session = session

    def current_session(self) -> Optional[Session]:
        return self.session

    def close(self) -> None:
        self.closed = True


class RecordingSender:
    """CodeSender that keeps every code it was asked to deliver."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, email: str, code: str, display_name: str = "") -> None:
        self.sent.append((email, code, display_name))

    def last_code(self, email: str) -> str:
        for sent_to, code, _ in reversed(self.sent):
            if sent_to == email:
                return code
        raise AssertionError(f"no code sent to {email}")


class FakeIdentityProvider:
    """Stand-in for the requests.Session under HttpCredentialGateway.

    Speaks the GoTrue routes the gateway uses and, like the real provider,
    honours only access and refresh tokens it issued itself. Anything else
    on /auth/v1/user gets 401 "invalid JWT".
    """

    def __init__(self, service_key: str = "test-service-key") -> None:
        self.service_key = service_key
        self.users: dict[str, tuple[str, str]] = {}  # email -> (password, identity_id)
        self.access_tokens: dict[str, str] = {}  # token -> email
        self.refresh_tokens: dict[str, str] = {}
        self.link_hashes: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.max_redirects = 30
        self.closed = False
        self._serial = itertools.count(1)

    def add_user(self, email: str, password: str, identity_id: str) -> None:
        self.users[email] = (password, identity_id)

    def password_of(self, email: str) -> str:
        return self.users[email][0]

    @staticmethod
    def _reply(status: int, body=None) -> MagicMock:
        resp = MagicMock()
        resp.status_code = status
        resp.ok = status < 400
        if body is None:
            resp.json.side_effect = ValueError("no body")
        else:
            resp.json.return_value = body
        return resp

    def _issue(self, email: str) -> MagicMock:
        n = next(self._serial)
        access, refresh = f"provider-at-{n}", f"provider-rt-{n}"
        self.access_tokens[access] = email
        self.refresh_tokens[refresh] = email
        return self._reply(
            200,
            {
                "access_token": access,
                "refresh_token": refresh,
                "token_type": "bearer",
                "expires_in": 3600,
                "user": {"id": self.users[email][1], "email": email},
            },
        )

    def request(self, method, url, headers=None, timeout=None, params=None, json=None):
        path = "/" + url.split("://", 1)[1].split("/", 1)[1]
        bearer = (headers or {}).get("Authorization", "").removeprefix("Bearer ")
        self.calls.append((method, path))
        body = json or {}
        if path == "/auth/v1/token" and params == {"grant_type": "password"}:
            known = self.users.get(body.get("email"))
            if known is None or known[0] != body.get("password"):
                return self._reply(400, {"error_description": "Invalid login credentials"})
            return self._issue(body["email"])
        if path == "/auth/v1/token" and params == {"grant_type": "refresh_token"}:
            email = self.refresh_tokens.pop(body.get("refresh_token"), None)
            if email is None:
                return self._reply(400, {"error_description": "Invalid Refresh Token"})
            return self._issue(email)
        if path == "/auth/v1/admin/generate_link":
            if bearer != self.service_key:
                return self._reply(401, {"msg": "invalid JWT"})
            if body.get("email") not in self.users:
                return self._reply(404, {"msg": "User not found"})
            token_hash = f"link-{next(self._serial)}"
            self.link_hashes[token_hash] = body["email"]
            return self._reply(200, {"hashed_token": token_hash, "verification_type": "magiclink"})
        if path == "/auth/v1/verify":
            email = self.link_hashes.pop(body.get("token_hash"), None)
            if email is None:
                return self._reply(403, {"msg": "Email link is invalid or has expired"})
            return self._issue(email)
        if path == "/auth/v1/user" and method == "PUT":
            email = self.access_tokens.get(bearer)
            if email is None:
                return self._reply(401, {"msg": "invalid JWT"})
            self.users[email] = (body["password"], self.users[email][1])
            return self._reply(200, {"id": self.users[email][1], "email": email})
        if path == "/auth/v1/logout":
            self.access_tokens.pop(bearer, None)
            return self._reply(204)
        return self._reply(404, {"msg": "Not found"})

    def close(self) -> None:
        self.closed = True


def make_session(identity_id: str, email: str, expires_at: int = 4_000_000_000) -> Session:
    return Session(
        access_token=f"access-{identity_id}",
        refresh_token=f"refresh-{identity_id}",
        expires_at=expires_at,
        identity=Identity(id=identity_id, email=email),
    )


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def file_store(tmp_path) -> Generator[AccountStore, None, None]:
    """File-backed store, shared safely between threads."""
    s = AccountStore(f"sqlite:///{tmp_path / 'accounts.db'}")
    yield s
    s.close()


@pytest.fixture
def make_account(store):
    def _make(
        identity_id: str = "user-1",
        email: str = "member@example.org",
        *,
        is_active: bool = True,
        is_first_login: bool = False,
        display_name: str = "",
        otp_requests_count: int = 0,
    ) -> AccountRecord:
        store.create_account(
            AccountRecord(
                identity_id=identity_id,
                email=email,
                display_name=display_name,
                is_active=is_active,
                is_first_login=is_first_login,
                password_updated=not is_first_login,
                otp_requests_count=otp_requests_count,
            )
        )
        return store.get_account(identity_id)

    return _make


# ---------------------------------------------------------------------------
# Lifecycle fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def gateway() -> FakeCredentialGateway:
    return FakeCredentialGateway()


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider(SERVICE_KEY)


@pytest.fixture
def otc_service(store, sender, clock) -> LocalOtcService:
    return LocalOtcService(store, sender, OtcLimits(max_requests=4, window_minutes=60), clock=clock)


@pytest.fixture
def oracle(store) -> AccountStatusOracle:
    return AccountStatusOracle(store)


@pytest.fixture
def machine(gateway, otc_service, oracle, store, clock) -> SessionStateMachine:
    return SessionStateMachine(gateway, otc_service, oracle, store, clock=clock.utc)


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AccountStore, RecordingSender], None, None]:
    """Yield (client, store, sender) for endpoint tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store and a
    recording code sender.
    """
    from api.limiter import limiter
    from api.main import app

    store = AccountStore(f"sqlite:///file:test_api_{request.module.__name__}?mode=memory&cache=shared&uri=true")
    sender = RecordingSender()
    otc = LocalOtcService(store, sender, OtcLimits(max_requests=4, window_minutes=60))

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = store
        app.state.otc = otc
        yield
        otc.close()

    app.router.lifespan_context = test_lifespan
    limiter.reset()

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, store, sender

    store.close()
