import os

os.environ.setdefault("TELEMETRY_ENABLED", "false")

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

# Import Base + all models so metadata is complete
from swapmarket.models import Base

from swapmarket.core.db import get_db
from swapmarket.main import create_app
from swapmarket.services.settlement import SettlementTimeouts
from swapmarket.wiring import build_services

from tests.fakes import FakeBlockchainGateway, FakeNotificationGateway, FakePaymentGateway, RecordingMetrics, RecordingSleep


def _test_db_url(tmp_path) -> str:
    # postgres when DATABASE_URL_TEST is set, a throwaway sqlite file otherwise
    return os.getenv("DATABASE_URL_TEST") or f"sqlite+aiosqlite:///{tmp_path}/swap.db"


def is_postgres() -> bool:
    return os.getenv("DATABASE_URL_TEST", "").startswith("postgresql")


@pytest.fixture
async def async_engine(tmp_path):
    engine = create_async_engine(_test_db_url(tmp_path), future=True)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db_session(session_factory):
    """
    Services commit their own work, so each test gets a fresh schema
    instead of the outer-transaction rollback trick.
    """
    async with session_factory() as session:
        yield session


@pytest.fixture
def payments():
    return FakePaymentGateway()


@pytest.fixture
def blockchain():
    return FakeBlockchainGateway()


@pytest.fixture
def notifications():
    return FakeNotificationGateway()


@pytest.fixture
def metrics():
    return RecordingMetrics()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def services(payments, blockchain, notifications, metrics, sleeper):
    return build_services(
        payments=payments,
        blockchain=blockchain,
        notifications=notifications,
        metrics=metrics,
        timeouts=SettlementTimeouts(
            payment=2.0,
            blockchain=2.0,
            blockchain_max_attempts=3,
            backoff_base=1,
            backoff_cap=8,
        ),
        sleep=sleeper,
    )


@pytest.fixture
async def client(session_factory, services):
    """
    HTTP client wired to the fake gateways; every request gets its own session.
    """
    app = create_app(services, telemetry=False)

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
