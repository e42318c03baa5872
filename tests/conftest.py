"""
tests/conftest.py -- Shared test fixtures for SessionGuard.

This module provides:
  - make_services(): builds the full service graph over an isolated in-memory DB
  - harness / services: function-scoped Services for unit/component tests
  - make_user / services_factory: factories for users and custom settings
  - ctx / other_ctx: RequestContext objects for two distinct devices
  - RecordingSender: notification sender that keeps what it was asked to send
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG must be set before any core/api import so get_settings() can
auto-generate signing secrets in dev mode instead of raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set env before any core/api import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
# The slowapi request throttle is exercised on its own; keep it out of the way
# of tests that log in many times from the same TestClient address.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.container import Services, build_services
from api.main import app
from auth.models import RequestContext
from core.config import Settings
from core.db import create_db_engine

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)

TEST_PASSWORD = "correct-horse-battery"


class RecordingSender:
    """Notification sender that records calls instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    def send(self, email: str, template: str, data: dict) -> None:
        self.sent.append((email, template, data))

    def templates(self) -> list[str]:
        return [template for _email, template, _data in self.sent]


# ---------------------------------------------------------------------------
# Service helpers
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_services(sender: RecordingSender | None = None, **overrides) -> Services:
    """Build Services over a fresh named in-memory database.

    bcrypt_rounds=4 keeps hashing fast; every other setting is the production
    default unless overridden.
    """
    url = _memory_url("sessionguard_test")
    settings = Settings(debug=True, bcrypt_rounds=4, database_url=url, **overrides)
    return build_services(settings, engine=create_db_engine(url), sender=sender)


def create_user(
    services: Services,
    email: str = "user@example.com",
    password: str = TEST_PASSWORD,
    role: str = "user",
    permissions: list[str] | None = None,
    status: str = "active",
) -> str:
    return services.users.create_user(
        email, services.hasher.hash(password), role=role, permissions=permissions, status=status
    )


@dataclass
class ServiceHarness:
    services: Services
    sender: RecordingSender

    def drain_notifications(self) -> list[str]:
        """Wait for queued notifications and return the templates sent."""
        self.services.notifier.shutdown(wait=True)
        return self.sender.templates()


# ---------------------------------------------------------------------------
# Function-scoped fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def harness() -> Generator[ServiceHarness, None, None]:
    sender = RecordingSender()
    services = make_services(sender=sender)
    yield ServiceHarness(services=services, sender=sender)
    services.close()


@pytest.fixture
def services(harness: ServiceHarness) -> Services:
    return harness.services


@pytest.fixture
def password() -> str:
    return TEST_PASSWORD


@pytest.fixture
def make_user(services: Services):
    """Factory fixture: make_user(email=..., password=..., role=...) -> user id."""

    def _make(**kwargs) -> str:
        return create_user(services, **kwargs)

    return _make


@pytest.fixture
def services_factory() -> Generator:
    """Factory fixture for tests that need non-default settings."""
    built: list[Services] = []

    def _build(sender: RecordingSender | None = None, **overrides) -> Services:
        svc = make_services(sender=sender, **overrides)
        built.append(svc)
        return svc

    yield _build
    for svc in built:
        svc.close()


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext.build(
        {"User-Agent": CHROME_UA, "Accept-Language": "en-US,en;q=0.9"},
        client_host="203.0.113.10",
    )


@pytest.fixture
def other_ctx() -> RequestContext:
    return RequestContext.build(
        {"User-Agent": IPHONE_UA, "Accept-Language": "en-GB"},
        client_host="198.51.100.7",
    )


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test services into app.state so TestClient routes see an
    isolated test DB. The prune task is a long-sleeping coroutine (a real
    asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        app.state.prune_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.prune_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    services: Services
    email: str
    password: str
    user_id: str


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext with one active user already created.

    base_url uses localhost so TrustedHostMiddleware accepts the requests.
    """
    services = make_services()
    email = "api-user@example.com"
    user_id = create_user(services, email=email)

    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        client.headers.update({"User-Agent": CHROME_UA, "Accept-Language": "en-US"})
        yield ApiContext(client=client, services=services, email=email, password=TEST_PASSWORD, user_id=user_id)

    services.close()
