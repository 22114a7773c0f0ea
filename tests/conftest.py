from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from fakes import COOKIE_NAME
from todo_sync.main import create_app
from todo_sync.memory_backend import InMemoryBackend
from todo_sync.settings import Settings, get_settings


def make_settings(**overrides) -> Settings:
    """Settings for tests: in-memory backend and a short feed retry."""
    base = replace(
        get_settings(),
        backend="memory",
        subscription_retry_seconds=0.01,
        client_cookie_name=COOKIE_NAME,
        log_level="WARNING",
    )
    return replace(base, **overrides)


@pytest.fixture()
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture()
def client(backend: InMemoryBackend):
    app = create_app(make_settings(), backend=backend)
    with TestClient(app) as test_client:
        yield test_client
