"""
Shared pytest fixtures.

Uses a SQLite file database so no Postgres is required for tests. Services
get the in-memory doubles from tests/fakes.py.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_diarybot.db")
os.environ.setdefault("LINE_CHANNEL_SECRET", "test-channel-secret")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

import pytest
from fastapi.testclient import TestClient

from diarybot.core.config import Settings
from diarybot.core.container import build_container, get_container
from diarybot.db.base import Base, SessionLocal, engine
from diarybot.main import app
from diarybot.services.resilience import CircuitBreakerConfig, ResilienceLayer, RetryConfig

from tests.fakes import ADMIN_TOKEN, CHANNEL_SECRET, FakeLLM, FakeMessaging, FakeStore


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store():
    return FakeStore()


@pytest.fixture()
def llm():
    return FakeLLM()


@pytest.fixture()
def messaging():
    return FakeMessaging()


async def _no_sleep(_seconds):
    return None


@pytest.fixture()
def resilience():
    """Zero-delay retries, default breaker thresholds."""
    return ResilienceLayer(
        CircuitBreakerConfig(failure_threshold=5, reset_timeout=60.0),
        default_retry=RetryConfig(max_retries=1, base_delay=0.0, max_delay=0.0),
        retry_policies={
            "database": RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0),
            "llm": RetryConfig(max_retries=1, base_delay=0.0, max_delay=0.0),
            "messaging": RetryConfig(max_retries=1, base_delay=0.0, max_delay=0.0),
        },
        sleep=_no_sleep,
    )


@pytest.fixture()
def test_settings():
    """Generous budgets so tier selection in tests does not depend on machine speed."""
    return Settings(
        LINE_CHANNEL_SECRET=CHANNEL_SECRET,
        ADMIN_TOKEN=ADMIN_TOKEN,
        LEVEL_1_BUDGET_MS=2000.0,
        LEVEL_3_BUDGET_MS=1000.0,
        TIER1_LLM_TIMEOUT_SECONDS=1.0,
        ASYNC_SUMMARY_TIMEOUT_SECONDS=0.5,
    )


@pytest.fixture()
def container(test_settings, store, llm, messaging, resilience):
    return build_container(test_settings, store=store, llm=llm, messaging=messaging, resilience=resilience)


@pytest.fixture()
def client(container):
    app.dependency_overrides[get_container] = lambda: container
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
