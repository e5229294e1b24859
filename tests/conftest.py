import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["INTERNAL_API_SECRET"] = "test-internal-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["DEBUG"] = "true"

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

import prizedraws.database.models  # noqa: F401
from prizedraws.database.db import Base, build_engine, build_sessionmaker, get_session
from prizedraws.database.repositories import MajorDrawRepository, MiniDrawRepository
from prizedraws.utils.cache import cache
from prizedraws.utils.timezone import calculate_freeze_time
from prizedraws.webapp.app import setup_webapp

INTERNAL_SECRET = "test-internal-secret"
CRON_SECRET = "test-cron-secret"

# 8 PM Sydney time on June 30 2025 (AEST, no daylight saving)
DRAW_DATE = datetime(2025, 6, 30, 10, 0, tzinfo=timezone.utc)
FREEZE_AT = DRAW_DATE - timedelta(minutes=30)
ACTIVATION_DATE = datetime(2025, 5, 31, 14, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'draws.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(autouse=True)
async def clear_cache():
    await cache.clear()
    yield
    await cache.clear()


@pytest.fixture
def make_major_draw(session):
    async def _make(status="active", draw_date=DRAW_DATE, activation_date=None, freeze_entries_at=None,
                    name="Tools Australia Major Draw", **kwargs):
        repo = MajorDrawRepository(session)
        return await repo.create(
            name=name,
            description="Monthly major draw",
            draw_date=draw_date,
            activation_date=activation_date or draw_date - timedelta(days=30),
            freeze_entries_at=freeze_entries_at or calculate_freeze_time(draw_date),
            status=status,
            prize_name="Ute and trailer",
            prize_value=85000,
            prize_details={"brand": "Toyota"},
            **kwargs,
        )
    return _make


@pytest.fixture
def make_mini_draw(session):
    async def _make(minimum_entries=10, name="Impact Driver Mini Draw"):
        repo = MiniDrawRepository(session)
        return await repo.create(
            name=name,
            description="Cordless impact driver",
            minimum_entries=minimum_entries,
            prize_name="Impact driver",
            prize_value=400,
            prize_category="power-tools",
        )
    return _make


@pytest.fixture
def app(session_factory):
    app = setup_webapp(session_factory, transition_check_interval=3600)

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def internal_headers():
    return {"Authorization": f"Bearer {INTERNAL_SECRET}"}


@pytest.fixture
def concurrent_delivery(monkeypatch):
    """
    Makes the next ledger pre-check miss, as when two deliveries of one payment
    both check the ledger before either has committed.
    """
    from prizedraws.utils import entry_allocation

    real_find_credit = entry_allocation.find_credit
    calls = []

    async def find_credit(session, payment_id, user_id):
        calls.append(payment_id)
        if len(calls) == 1:
            return None
        return await real_find_credit(session, payment_id, user_id)

    monkeypatch.setattr(entry_allocation, "find_credit", find_credit)
    return calls
