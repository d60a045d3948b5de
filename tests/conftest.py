"""Pytest fixtures: fake platform, session context, API client with overrides."""
import os

# settings are read at import time; keep the app away from real services
os.environ.setdefault("AUTO_CREATE_TABLES", "0")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DATABASE_URL", "postgresql+asyncpg://localhost:5432/docdash_test")

import pytest
from fastapi.testclient import TestClient

from docdash.auth import SessionContext
from docdash.main import app, get_backend, get_scheduler
from fakes import FakeBackend, make_token


@pytest.fixture
def anyio_backend():
    # asyncio only, no Trio
    return "asyncio"


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def context():
    return SessionContext(user_id="u1", email="u1@example.com")


@pytest.fixture
def scheduled():
    """Upload ids handed to the processing scheduler."""
    return []


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token('u1')}"}


@pytest.fixture
def client(backend, scheduled):
    app.dependency_overrides[get_backend] = lambda: backend
    app.dependency_overrides[get_scheduler] = lambda: scheduled.append
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
