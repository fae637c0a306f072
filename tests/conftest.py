"""TrainKit – Pytest Configuration.

Shared fixtures for all tests.
"""

import os

# Force testing mode to allow SQLite fallback in trainkit/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret_1234567890abcdef"
os.environ["BILLING_PAST_DUE_GRACE"] = "true"

import pytest
from httpx import ASGITransport, AsyncClient

from trainkit.core.db import Base, SessionLocal, engine, run_migrations
from trainkit.gateway.main import app


@pytest.fixture(autouse=True)
def fresh_schema():
    """Every test starts from empty tables."""
    run_migrations()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client():
    """Async test client for the FastAPI gateway."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
