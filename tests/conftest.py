"""
tests/conftest.py -- Shared test fixtures for Gatehouse tests.

This module provides:
  - make_engine(): isolated named shared-memory SQLite engine
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - engine / hasher / credential_service / codec: unit-test building blocks
  - api_env: TestClient plus an admin user, a service key and an admin token
  - web_client: TestClient with follow_redirects=False for browser login tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers and the auth middleware in a thread
pool. Plain :memory: DBs are per-connection and would present a blank schema
to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment must be set before any api/ or core/ import so get_settings()
sees it:
  DEBUG=true            -- auto-generate SECRET_KEY instead of raising
  BCRYPT_ROUNDS=4       -- cheapest legal bcrypt cost; keeps tests fast
  ALLOWED_HOSTS         -- TestClient sends Host: testserver
  EXCHANGE_RATE_LIMIT   -- high enough that suites never trip it
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: Set before any api/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("EXCHANGE_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app, wire_services
from auth.credentials import ServiceCredentialService
from auth.github import GitHubClient
from auth.hashing import SecretHasher
from auth.models import User
from auth.store import CredentialStore, create_store_engine
from auth.tokens import SessionTokenCodec

# Mount the browser login router once; asgi.py does this in production.
if not any(getattr(r, "name", None) == "github_callback" for r in app.routes):
    from web.routes import router as web_router

    app.include_router(web_router, tags=["Browser login"])

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789"


def make_engine(db_suffix: str) -> Engine:
    """Create an isolated named shared-memory SQLite engine with the auth schema."""
    return create_store_engine(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(engine: Engine, github, oauth):
    """Return an async context manager that replaces the real lifespan.

    Builds the real object graph through wire_services(), but with a mocked
    GitHub client and OAuth registry so no test touches the network.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, engine, github, oauth)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = make_engine(uuid.uuid4().hex)
    yield eng
    eng.dispose()


@pytest.fixture
def hasher() -> SecretHasher:
    return SecretHasher(rounds=4)


@pytest.fixture
def credential_service(engine: Engine, hasher: SecretHasher) -> ServiceCredentialService:
    return ServiceCredentialService(CredentialStore(engine), hasher)


@pytest.fixture
def codec() -> SessionTokenCodec:
    return SessionTokenCodec(TEST_SECRET_KEY, ttl_seconds=3600)


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiEnv:
    client: TestClient
    api_key: str
    admin: User
    admin_token: str
    github: MagicMock

    def headers(self, token: str | None = None, api_key: str | None = None) -> dict[str, str]:
        """Authorization (and optionally X-User-Token) headers for a request."""
        result = {"Authorization": f"Bearer {api_key or self.api_key}"}
        if token is not None:
            result["X-User-Token"] = token
        return result

    def admin_headers(self) -> dict[str, str]:
        return self.headers(token=self.admin_token)


@pytest.fixture(scope="module")
def api_env(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real middleware and route handlers but use an isolated
    in-memory store. One admin user and one system-wide service key are
    created after startup.
    """
    eng = make_engine(f"api_{request.module.__name__}")
    github = MagicMock(spec=GitHubClient)
    github.fetch_profile.return_value = None

    app.router.lifespan_context = _patch_lifespan(eng, github, MagicMock())

    with TestClient(app, raise_server_exceptions=True) as client:
        state = client.app.state
        admin = state.user_store.save(User(email="admin@example.com", provider_id=1, provider_login="admin"))
        state.user_store.set_admin(admin.id, True)
        admin = state.user_store.get_by_id(admin.id)
        raw_key, _record = state.credential_service.issue("test-suite")
        admin_token = state.token_codec.issue(admin.id, admin.email)
        yield ApiEnv(client=client, api_key=raw_key, admin=admin, admin_token=admin_token, github=github)

    eng.dispose()


@pytest.fixture(scope="module")
def web_client(request) -> Generator[tuple[TestClient, MagicMock], None, None]:
    """Yield (client, github_oauth_client) for browser login tests.

    follow_redirects=False is essential: we assert on redirect Location
    headers, which are invisible once the client follows the redirect.

    The OAuth registry is a MagicMock whose create_client() returns the
    yielded mock; tests set authorize_access_token / get behaviour on it.
    """
    eng = make_engine(f"web_{request.module.__name__}")
    oauth = MagicMock()
    github_oauth_client = MagicMock()
    oauth.create_client.return_value = github_oauth_client

    app.router.lifespan_context = _patch_lifespan(eng, MagicMock(spec=GitHubClient), oauth)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, github_oauth_client

    eng.dispose()
