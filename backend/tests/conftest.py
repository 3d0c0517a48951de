"""
Test Configuration — Fixtures for async DB, test client, and seeded sales.

Each test gets its own in-memory SQLite database (StaticPool keeps the single
connection alive for the engine's lifetime), so tests never share state.
"""

import uuid
from datetime import date, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_current_user, get_db
from api.main import app
from db import models  # noqa: F401  (registers tables on Base.metadata)
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Detection runs for "today" = EVALUATION_DATE, so anomalies land on YESTERDAY
EVALUATION_DATE = date(2026, 10, 18)
YESTERDAY = EVALUATION_DATE - timedelta(days=1)


@pytest.fixture
async def test_engine():
    """Create a fresh in-memory database with all tables."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "auth0|test-user-id",
        "email": "test@salesdash.local",
    }


@pytest.fixture
def frozen_today(monkeypatch):
    """Pin the business date used by the store and the API to EVALUATION_DATE."""
    monkeypatch.setattr("alerts.store.business_today", lambda: EVALUATION_DATE)
    monkeypatch.setattr("api.v1.routers.anomalies.business_today", lambda: EVALUATION_DATE)
    return EVALUATION_DATE


@pytest.fixture
def published(monkeypatch):
    """Capture anomalies handed to Redis pub/sub instead of connecting to Redis."""
    sent: list[dict] = []

    async def _capture(anomalies):
        sent.extend(anomalies)
        return 0

    monkeypatch.setattr("alerts.engine.publish_anomalies", _capture)
    return sent


@pytest.fixture
async def client(test_db, mock_user, frozen_today, published):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def _add_channel_history(
    db: AsyncSession,
    name: str,
    baseline: list[float],
    yesterday: float | None,
    is_active: bool = True,
):
    """
    Create a channel with `baseline` amounts on the 30 days before YESTERDAY
    (most recent first) and an optional sale on YESTERDAY.
    """
    channel = models.Channel(id=uuid.uuid4(), name=name, type="marketplace", is_active=is_active)
    db.add(channel)
    await db.flush()

    for offset, amount in enumerate(baseline):
        db.add(
            models.DailySale(
                channel_id=channel.id,
                sale_date=YESTERDAY - timedelta(days=offset + 1),
                amount=amount,
            )
        )
    if yesterday is not None:
        db.add(models.DailySale(channel_id=channel.id, sale_date=YESTERDAY, amount=yesterday))
    await db.flush()
    return channel


@pytest.fixture
async def seeded_sales(test_db):
    """
    Four active channels covering every rule plus one inactive channel:
      - Loja Própria: mean 100, yesterday 60 → HIGH drop
      - Marketplace:  mean 50, yesterday 120 → INFO spike
      - Atacado:      mean 80, no sale yesterday → NO_SALES + CRITICAL drop
      - Instagram:    no history → nothing
      - Legado:       inactive, would drop
    """
    channels = {
        "own_store": await _add_channel_history(test_db, "Loja Própria", [100.0] * 30, 60.0),
        "marketplace": await _add_channel_history(test_db, "Marketplace", [50.0] * 30, 120.0),
        "wholesale": await _add_channel_history(test_db, "Atacado", [80.0] * 30, None),
        "instagram": await _add_channel_history(test_db, "Instagram", [], None),
        "legacy": await _add_channel_history(test_db, "Legado", [100.0] * 30, 10.0, is_active=False),
    }
    await test_db.commit()
    return channels


@pytest.fixture
def add_channel(test_db):
    """Factory fixture: `await add_channel(name, baseline, yesterday, is_active=True)`."""

    async def _factory(name: str, baseline: list[float], yesterday: float | None, is_active: bool = True):
        channel = await _add_channel_history(test_db, name, baseline, yesterday, is_active=is_active)
        await test_db.commit()
        return channel

    return _factory
