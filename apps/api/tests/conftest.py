import uuid
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from models.service import Service
from models.user import User
from routers import rate_limit


SIGNER_PRIVATE_KEY = "0x" + "11" * 32
CONTRACT_ADDRESS = "0x" + "22" * 20
WEBHOOK_SECRET = "test-webhook-secret-0123456789"


def wallet(seed: int) -> str:
    return "0x" + f"{seed:040x}"


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def settlement_settings(monkeypatch):
    monkeypatch.setattr(settings, "BACKEND_SIGNER_PRIVATE_KEY", SIGNER_PRIVATE_KEY)
    monkeypatch.setattr(settings, "CONTRACT_ADDRESS", CONTRACT_ADDRESS)
    monkeypatch.setattr(settings, "CONTRACT_CHAIN_ID", 84532)
    monkeypatch.setattr(settings, "FUNDING_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "CHAIN_EVENTS_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "VERIFY_PAYMENT_RECEIPTS", False)
    monkeypatch.setattr(settings, "LEDGER_RETRY_BASE_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "ADMIN_USER_IDS", ["admin-user"])


@pytest.fixture(autouse=True)
def no_redis_enqueue(monkeypatch):
    """Record reconciliation enqueues instead of talking to Redis."""
    enqueued = []
    monkeypatch.setattr(
        "services.settlement_queue.enqueue_points_reconciliation",
        lambda reconciliation_id: enqueued.append(reconciliation_id),
    )
    return enqueued


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "settlement.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def integration_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


async def create_user(
    db: AsyncSession,
    user_id: str,
    wallet_seed: Optional[int] = None,
    referred_by: Optional[str] = None,
) -> User:
    user = User(
        id=user_id,
        email=f"{user_id}@example.test",
        wallet_address=wallet(wallet_seed) if wallet_seed is not None else None,
        referred_by=referred_by,
    )
    db.add(user)
    await db.commit()
    return user


async def create_service(db: AsyncSession, provider_id: str, price: str = "20.00") -> Service:
    service = Service(
        id=str(uuid.uuid4()),
        provider_id=provider_id,
        title="Portrait session",
        price=Decimal(price),
        duration_minutes=60,
        is_active=True,
    )
    db.add(service)
    await db.commit()
    return service
