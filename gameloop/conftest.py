# gameloop/conftest.py
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from gameloop.core.clock import ManualClock
from gameloop.core.config import Settings
from gameloop.core.database import build_engine, metadata
from gameloop.core.metrics import METRICS
from gameloop.features.challenges.store import InMemoryChallengeStore
from gameloop.features.leaderboard.cache import InMemoryLeaderboardCache
from gameloop.features.users.store import InMemoryUserStore


START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are process-global; start every test from zero."""
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def user_store():
    return InMemoryUserStore()


@pytest.fixture
def challenge_store():
    return InMemoryChallengeStore()


@pytest.fixture
def cache():
    return InMemoryLeaderboardCache()


@pytest.fixture
def test_settings():
    """Settings isolated from the developer's .env and environment."""
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL=None,
        LEADERBOARD_CACHE_BACKEND="memory",
        CHALLENGE_POLICY="rotation",
        REFERENCE_TIMEZONE="UTC",
        SCHEDULER_ENABLED=False,
        JWT_SECRET="test-secret",
        AUTH_ALLOW_USER_HEADER=True,
    )


@pytest.fixture
def services(test_settings, clock, user_store, challenge_store, cache):
    from gameloop.features.scheduler.jobs import build_services

    built = build_services(
        test_settings,
        clock=clock,
        user_store=user_store,
        challenge_store=challenge_store,
        cache=cache,
    )
    yield built
    built.orchestrator.stop(wait=False)


@pytest.fixture
def client(services, test_settings, monkeypatch):
    from gameloop.core import config
    from gameloop.main import create_app

    monkeypatch.setattr(config.settings, "JWT_SECRET", test_settings.JWT_SECRET)
    monkeypatch.setattr(config.settings, "AUTH_ALLOW_USER_HEADER", True)
    app = create_app(services, start_scheduler=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sqlite_session_factory():
    """In-memory SQLite with every table created; one shared connection."""
    engine = build_engine("sqlite://")
    metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    metadata.drop_all(bind=engine)
    engine.dispose()
