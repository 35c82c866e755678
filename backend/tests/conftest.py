"""
Pytest configuration and shared fixtures for backend tests.
"""
import sys
from pathlib import Path

# Ensure backend root and this directory are on path
backend_root = Path(__file__).resolve().parent.parent
for path in (backend_root, Path(__file__).resolve().parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

import pytest
from fastapi.testclient import TestClient

from fakes import FakeBackendApi, FakeClock, FakeTimers
from services.session_registry import SessionRegistry


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers(clock):
    return FakeTimers(clock)


@pytest.fixture
def api(clock):
    return FakeBackendApi(clock)


@pytest.fixture
def registry(api, clock, timers):
    """Session registry whose every session talks to the same fake backend."""
    return SessionRegistry(api_factory=lambda token: api, clock=clock, timers=timers)


@pytest.fixture
def client(registry):
    """TestClient for server:app wired to the fake registry. Lifespan (scheduler) is not started."""
    from server import app
    previous = app.state.session_registry
    app.state.session_registry = registry
    yield TestClient(app)
    app.state.session_registry = previous


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer test-token"}
