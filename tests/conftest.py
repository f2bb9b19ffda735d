"""
tests/conftest.py -- Shared test fixtures for the Stellr auth tests.

This module provides:
  - engine / store / ledger / tokens / single_use: unit-level components over
    an isolated in-memory DB per test
  - RecordingDispatcher: captures notifications so tests can read tokens
  - orchestrator: SessionOrchestrator wired from the fixtures above
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The environment must be set before any auth/core import so get_settings()
auto-generates secrets in dev mode and bcrypt runs at its minimum cost.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("FORGOT_PASSWORD_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.ledger import RefreshTokenLedger
from auth.oauth import OAuthBridge
from auth.service import SessionOrchestrator
from auth.single_use import SingleUseTokenManager
from auth.store import CredentialStore, create_auth_engine
from auth.tokens import TokenService
from core.config import get_settings

# ---------------------------------------------------------------------------
# Notification doubles
# ---------------------------------------------------------------------------


@dataclass
class SentMessage:
    kind: str
    recipient: str
    token: str


class RecordingDispatcher:
    """Synchronous dispatcher that keeps every message for inspection."""

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []

    def send(self, kind: str, recipient: str, token: str) -> None:
        self.sent.append(SentMessage(kind, recipient, token))

    def last(self, kind: str, recipient: str) -> str:
        """Return the newest token of kind sent to recipient."""
        for msg in reversed(self.sent):
            if msg.kind == kind and msg.recipient == recipient:
                return msg.token
        raise AssertionError(f"no {kind} message sent to {recipient}")


class FailingDispatcher:
    """Dispatcher whose mail server is always down."""

    def send(self, kind: str, recipient: str, token: str) -> None:
        raise ConnectionRefusedError("smtp unavailable")


# ---------------------------------------------------------------------------
# Unit-level fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def engine():
    eng = create_auth_engine(_memory_url(f"test_unit_{uuid.uuid4().hex}"))
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> CredentialStore:
    return CredentialStore(engine)


@pytest.fixture
def ledger(engine) -> RefreshTokenLedger:
    return RefreshTokenLedger(engine)


@pytest.fixture
def tokens(store, ledger, settings) -> TokenService:
    return TokenService(store, ledger, settings)


@pytest.fixture
def single_use(store, settings) -> SingleUseTokenManager:
    return SingleUseTokenManager(store, settings)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def failing_dispatcher() -> FailingDispatcher:
    return FailingDispatcher()


@pytest.fixture
def orchestrator(store, ledger, tokens, single_use, dispatcher) -> SessionOrchestrator:
    return SessionOrchestrator(store, ledger, tokens, single_use, dispatcher)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiContext:
    client: TestClient
    orchestrator: SessionOrchestrator
    dispatcher: RecordingDispatcher


def _patch_lifespan(engine, orchestrator: SessionOrchestrator, dispatcher: RecordingDispatcher):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test components into app.state so TestClient routes
    hit real handlers over an isolated database, with notifications recorded
    instead of sent.

    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.ledger = orchestrator.ledger
        app.state.notifier = dispatcher
        app.state.oauth_bridge = OAuthBridge(get_settings())
        app.state.auth = orchestrator
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    One TestClient per test module for speed; tests use distinct emails so
    they do not collide within the module's database.
    """
    settings = get_settings()
    engine = create_auth_engine(_memory_url(f"test_api_{uuid.uuid4().hex}"))
    store = CredentialStore(engine)
    ledger = RefreshTokenLedger(engine)
    dispatcher = RecordingDispatcher()
    orchestrator = SessionOrchestrator(
        store,
        ledger,
        TokenService(store, ledger, settings),
        SingleUseTokenManager(store, settings),
        dispatcher,
    )

    app.router.lifespan_context = _patch_lifespan(engine, orchestrator, dispatcher)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client=client, orchestrator=orchestrator, dispatcher=dispatcher)

    engine.dispose()
