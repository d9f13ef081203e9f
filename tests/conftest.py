from __future__ import annotations

from typing import Callable

import pytest
from fastapi.testclient import TestClient

from embedproxy.core.config import Settings
from embedproxy.main import create_app


def _make_settings(**overrides) -> Settings:
    """Settings isolated from the developer's environment and ``.env``."""
    defaults = dict(
        environment="production",
        allow_loopback=False,
        timeout_ms=2_000,
        cache_sweep_interval_s=3600.0,
        log_level="WARNING",
    )
    return Settings(_env_file=None, **{**defaults, **overrides})


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    return _make_settings


@pytest.fixture
def settings() -> Settings:
    return _make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client_factory() -> Callable[..., TestClient]:
    """Build TestClients around custom settings; lifespan runs on enter."""
    clients: list[TestClient] = []

    def _factory(**overrides) -> TestClient:
        client = TestClient(create_app(_make_settings(**overrides)))
        client.__enter__()
        clients.append(client)
        return client

    yield _factory
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(client_factory) -> TestClient:
    """TestClient with production settings and real startup/shutdown hooks."""
    return client_factory()
