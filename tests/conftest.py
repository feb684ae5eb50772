"""
tests/conftest.py -- Shared test fixtures for the BTHL auth tests.

This module provides:
  - clock / notifier: a FakeClock and a RecordingNotifier per test
  - store / services: isolated in-memory identity store + the full service graph
  - api: TestClient over the real app with a patched lifespan

Builders and doubles live in tests/helpers.py.

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Each fixture uses a unique name so tests never share rows.

Environment variables must be set before any auth/core import: get_settings()
is read once at module load by auth.passwords and api.main.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

# CRITICAL: Set these before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("DATABASE_URL", "sqlite:///file:bthl_default_test?mode=memory&cache=shared&uri=true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.store import IdentityStore
from core.config import get_settings
from helpers import FakeClock, RecordingNotifier, make_services, memory_url


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore(memory_url())
    yield s
    s.close()


@pytest.fixture
def services(store: IdentityStore, clock: FakeClock, notifier: RecordingNotifier) -> SimpleNamespace:
    return make_services(store, clock, notifier)


def _patch_lifespan(store: IdentityStore, clock: FakeClock, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, clock and notifier into app.state so TestClient
    routes see an isolated database rather than the configured one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, get_settings(), store, clock=clock, notifier=notifier)
        yield

    return test_lifespan


@pytest.fixture
def api(clock: FakeClock, notifier: RecordingNotifier) -> Generator[SimpleNamespace, None, None]:
    """Yield (client, store, clock, notifier) for HTTP tests."""
    test_store = IdentityStore(memory_url("api"))
    app.router.lifespan_context = _patch_lifespan(test_store, clock, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield SimpleNamespace(client=client, store=test_store, clock=clock, notifier=notifier)

    test_store.close()
