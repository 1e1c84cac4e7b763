"""Test configuration and fixtures.

Each test gets its own SQLite file (via aiosqlite) with every table created
fresh, so tests that run concurrent requests against separate connections
see real write serialization. The payment gateway is the in-memory
``FakeGateway`` from ``tests.helpers``.
"""

from collections.abc import AsyncGenerator
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from homepro.config import settings
from homepro.database import Base, get_db
from homepro.main import app, build_escrow_service
from homepro.models.escrow import EscrowAuditLog, EscrowHold  # noqa: F401 (registers models)
from homepro.models.job import Bid, Job  # noqa: F401
from homepro.models.notification import Notification  # noqa: F401
from homepro.models.payout import GatewayCustomer, PayoutAccount  # noqa: F401
from homepro.redis import get_redis
from homepro.services.escrow import EscrowService
from homepro.services.fees import FeePolicy
from homepro.services.gateway import RetryPolicy
from tests.helpers import FakeGateway


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'homepro_test.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def retry_policy(sleeps: list[float]) -> RetryPolicy:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=8.0, sleep=record_sleep)


@pytest.fixture
def fee_policy() -> FeePolicy:
    return FeePolicy(rate=Decimal("0.10"))


@pytest.fixture
def escrow(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
    fee_policy: FeePolicy,
    retry_policy: RetryPolicy,
) -> EscrowService:
    return build_escrow_service(session_factory, gateway, fee_policy, retry_policy)


@pytest.fixture
def mock_redis() -> MagicMock:
    """Redis stand-in whose token bucket always has room."""
    redis = MagicMock()
    redis.eval = AsyncMock(return_value=[1, 99, 0])
    return redis


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    escrow: EscrowService,
    gateway: FakeGateway,
    retry_policy: RetryPolicy,
    mock_redis: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with the database, Redis and escrow components overridden."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_redis() -> AsyncGenerator[MagicMock, None]:
        yield mock_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.state.escrow_service = escrow
    app.state.gateway = gateway
    app.state.retry_policy = retry_policy

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
