"""Shared fixtures for the examprep test suite."""

import pytest
from fastapi.testclient import TestClient

from examprep.app.core.cache import InMemoryCache
from examprep.app.core.config import Settings
from examprep.app.dependencies import build_services
from examprep.app.main import create_app
from examprep.app.services.cache_store import CacheStore


def make_settings(**overrides) -> Settings:
    """Settings isolated from the developer's .env and DATABASE_URL."""
    values = {"environment": "test", "redis_url": "", "DATABASE_URL": ""}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeClock:
    """Controllable time source returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def backend() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def store(backend) -> CacheStore:
    return CacheStore(backend)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(settings, backend):
    return build_services(settings, backend=backend)


@pytest.fixture
def app(settings, services):
    return create_app(settings=settings, services=services)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
