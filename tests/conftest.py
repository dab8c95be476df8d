"""
tests/conftest.py -- Shared test fixtures for the Sales CRM test suite.

This module provides:
  - make_user_store(): an isolated named shared-memory SQLite UserStore
  - RecordingMailer: captures outgoing emails (and raw tokens) instead of sending
  - _patch_lifespan(): wires the test store and mailer into app.state
  - crm: an ApiHarness (TestClient + store + mailer + user helpers) per test

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

Environment must be set before any api/auth/core import: get_settings() is
cached on first use. DEBUG auto-generates the signing secrets, BCRYPT_ROUNDS=4
keeps hashing fast, RATE_LIMIT_ENABLED=false stops the brute-force limits from
tripping across tests, and ALLOWED_HOSTS admits TestClient's "testserver".
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.mailer import MailDeliveryError
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password

DEFAULT_PASSWORD = "Passw0rd!"


def make_user_store() -> UserStore:
    """Create a UserStore on a uniquely named in-memory database."""
    name = f"test_auth_{uuid.uuid4().hex}"
    return UserStore(db_url=f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


# ---------------------------------------------------------------------------
# Mailer double
# ---------------------------------------------------------------------------


@dataclass
class SentEmail:
    kind: str  # "verification" | "reset" | "welcome"
    to: str
    token: Optional[str] = None


class RecordingMailer:
    """Stands in for auth.mailer.Mailer. Set fail_kinds to make a message kind raise."""

    def __init__(self) -> None:
        self.sent: list[SentEmail] = []
        self.fail_kinds: set[str] = set()
        self.is_configured = True

    def _record(self, kind: str, user: User, token: Optional[str] = None) -> None:
        if kind in self.fail_kinds:
            raise MailDeliveryError("SMTP unavailable")
        self.sent.append(SentEmail(kind=kind, to=user.email, token=token))

    def send_verification_email(self, user: User, token: str) -> None:
        self._record("verification", user, token)

    def send_password_reset_email(self, user: User, token: str) -> None:
        self._record("reset", user, token)

    def send_welcome_email(self, user: User) -> None:
        self._record("welcome", user)

    def last(self, kind: str, to: Optional[str] = None) -> Optional[SentEmail]:
        for email in reversed(self.sent):
            if email.kind == kind and (to is None or email.to == to):
                return email
        return None


# ---------------------------------------------------------------------------
# App harness
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, mailer: RecordingMailer):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.mailer = mailer
        yield

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    store: UserStore
    mailer: RecordingMailer
    _counter: list[int] = field(default_factory=lambda: [0])

    def create_user(
        self,
        name: str = "Sam Seller",
        email: Optional[str] = None,
        password: str = DEFAULT_PASSWORD,
        role: str = "sales",
        is_verified: bool = True,
        is_active: bool = True,
    ) -> User:
        if email is None:
            self._counter[0] += 1
            email = f"user{self._counter[0]}@example.com"
        uid = self.store.create_user(
            User(
                name=name,
                email=email,
                role=role,
                hashed_password=hash_password(password),
                is_verified=is_verified,
                is_active=is_active,
            )
        )
        return self.store.get_by_id(uid)

    def auth(self, user: User, expire_seconds: Optional[int] = None) -> dict[str, str]:
        token = create_access_token(user.id, user.role, expire_seconds=expire_seconds)
        return {"Authorization": f"Bearer {token}"}

    def login(self, email: str, password: str = DEFAULT_PASSWORD) -> dict:
        resp = self.client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()


@pytest.fixture()
def crm() -> Generator[ApiHarness, None, None]:
    """Yield a harness around the real app, backed by a fresh store and mailer.

    Function-scoped: auth tests mutate users and tokens, so every test starts
    from an empty database.
    """
    user_store = make_user_store()
    mailer = RecordingMailer()
    app.router.lifespan_context = _patch_lifespan(user_store, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=user_store, mailer=mailer)

    user_store.close()


@pytest.fixture()
def user_store() -> Generator[UserStore, None, None]:
    store = make_user_store()
    yield store
    store.close()


@pytest.fixture()
def rate_limited() -> Generator[None, None, None]:
    """Switch the shared limiter on for one test, with empty counters."""
    from api.limiter import limiter

    limiter.reset()
    limiter.enabled = True
    yield
    limiter.enabled = False
    limiter.reset()
