"""Pytest configuration and fixtures"""
import asyncio

import pytest
from fastapi.testclient import TestClient

from degrees.database import ConnectionStore
from degrees.main import app, get_service, get_store, limiter
from degrees.pathfinder import PathFinder
from degrees.service import ConnectionService
from tests.fakes import FakeProvider


@pytest.fixture
async def store(tmp_path):
    """Opened connection store in a temporary directory"""
    connection_store = ConnectionStore(tmp_path / "connections.db", allow_reset=True)
    await connection_store.open()
    return connection_store


@pytest.fixture
def make_finder(store):
    """Factory for path finders over a FakeProvider graph"""
    def _make(provider, **limits):
        return PathFinder(store, provider, **limits)
    return _make


@pytest.fixture
def api_store(tmp_path):
    """Opened connection store for synchronous API tests"""
    connection_store = ConnectionStore(tmp_path / "api.db", allow_reset=True)
    asyncio.run(connection_store.open())
    return connection_store


@pytest.fixture
def api_provider():
    # 1 -> 2 -> 3 -> 4, plus 5 isolated
    return FakeProvider(follows=[(1, 2), (2, 3), (3, 4)])


@pytest.fixture
def client(api_store, api_provider):
    """Test client for the FastAPI app with in-memory components"""
    finder = PathFinder(api_store, api_provider, max_depth=6, timeout_seconds=5)
    service = ConnectionService(finder, api_provider, api_store)

    app.dependency_overrides[get_store] = lambda: api_store
    app.dependency_overrides[get_service] = lambda: service
    limiter.enabled = False

    yield TestClient(app)

    app.dependency_overrides.clear()
    limiter.enabled = True
