"""
tests/conftest.py -- Shared test fixtures for realmgate tests.

This module provides:
  - make_store(): isolated in-memory AuthStore per test
  - build_test_services(): the real service graph around a fake mesh-control
    service and a fake identity provider
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - harness: TestClient + services + fakes for HTTP integration tests
  - start_login / login: drive /auth/login -> /auth/callback through the app

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync work in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.

Environment variables must be set before any core/auth import so
get_settings() sees them (DEBUG auto-generates SECRET_KEY; PUBLIC_URL matches
the TestClient origin so redirect checks and cookies line up).
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set env before any core/auth import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("PUBLIC_URL", "http://testserver")
os.environ.setdefault("MESH_PUBLIC_URL", "https://mesh.example.test")
os.environ.setdefault("ACL_INIT_ON_STARTUP", "false")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("DEVICE_CODE_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.services import Services, assemble_services
from auth.oauth import ProviderRegistry
from auth.store import AuthStore
from core.config import get_settings
from fakes import FakeMeshControl, FakeProvider

# ---------------------------------------------------------------------------
# Store and service helpers
# ---------------------------------------------------------------------------


def make_store() -> AuthStore:
    """Create an AuthStore on a uniquely named shared-memory SQLite database."""
    return AuthStore(db_url=f"sqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def build_test_services(
    store: AuthStore | None = None,
    mesh: FakeMeshControl | None = None,
    provider: FakeProvider | None = None,
) -> Services:
    return assemble_services(
        get_settings(),
        store or make_store(),
        mesh or FakeMeshControl(),
        ProviderRegistry([provider or FakeProvider()]),
    )


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    The maintenance_task is a long-sleeping coroutine that keeps asyncio
    happy (a real asyncio.Task is required; a mock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = make_store()
    yield s
    s.close()


@dataclass
class Harness:
    client: TestClient
    services: Services
    mesh: FakeMeshControl
    provider: FakeProvider


@pytest.fixture
def harness() -> Generator[Harness, None, None]:
    """Yield a Harness for HTTP integration tests.

    follow_redirects=False is essential: login tests assert on redirect
    locations, which are invisible once the client follows them.
    """
    mesh = FakeMeshControl()
    provider = FakeProvider()
    services = build_test_services(mesh=mesh, provider=provider)
    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield Harness(client=client, services=services, mesh=mesh, provider=provider)

    services.store.close()


def _start_login(client: TestClient, redirect_uri: str | None = None, provider: str = "fake") -> str:
    """GET /auth/login and return the state token from the provider redirect."""
    params = {"provider": provider}
    if redirect_uri is not None:
        params["redirect_uri"] = redirect_uri
    resp = client.get("/auth/login", params=params)
    assert resp.status_code == 302, resp.text
    return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]


@pytest.fixture
def start_login(harness: Harness):
    """Return a callable that begins a login and yields the state token."""

    def _start(redirect_uri: str | None = None, provider: str = "fake") -> str:
        return _start_login(harness.client, redirect_uri, provider)

    return _start


@pytest.fixture
def login(harness: Harness):
    """Return a callable that completes a full login for subject and returns the session token.

    The client's cookie jar is cleared afterwards so each test chooses
    explicitly between header and cookie authentication.
    """

    def _login(subject: str = "alice") -> str:
        code = f"code-{subject}"
        if code not in harness.provider.users:
            harness.provider.add_user(code, subject=subject, email=f"{subject}@example.test", name=subject.title())
        state = _start_login(harness.client)
        resp = harness.client.get("/auth/callback", params={"code": code, "state": state})
        assert resp.status_code == 302, resp.text
        harness.client.cookies.clear()
        return resp.headers["X-Session-Token"]

    return _login
