import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from photostudio.api.dependencies import get_audit_logger, get_current_user, get_gateway
from photostudio.config import settings
from photostudio.database import get_db
from photostudio.main import app
from photostudio.models import Base, CreditTransaction, TxnType, User
from photostudio.services.audit_logger import AuditLogger
from photostudio.services.rate_limiter import InMemoryRateLimiter

TEST_KEY_SECRET = "test_key_secret"
TEST_WEBHOOK_SECRET = "test_webhook_secret"
TEST_JWT_SECRET = "test-jwt-secret-for-unit-tests"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "RAZORPAY_KEY_ID", "rzp_test_key")
    monkeypatch.setattr(settings, "RAZORPAY_KEY_SECRET", TEST_KEY_SECRET)
    monkeypatch.setattr(settings, "RAZORPAY_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "RAZORPAY_PUBLIC_KEY_ID", "")
    monkeypatch.setattr(settings, "PAYMENT_STAGE", "sandbox")
    monkeypatch.setattr(settings, "SUPABASE_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "MEDIA_DIR", str(tmp_path / "media"))
    return settings


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit(session_factory):
    return AuditLogger(session_factory)


@pytest.fixture
async def user(session_factory):
    """A provisioned user holding 100 credits backed by a bonus ledger row."""
    async with session_factory() as session:
        user = User(user_id=uuid.uuid4(), email="shopper@example.com", name="Shopper", credits=100)
        session.add(user)
        await session.flush()
        session.add(CreditTransaction(
            user_id=user.user_id, amount=100, txn_type=TxnType.BONUS, description="Welcome bonus credits",
        ))
        await session.commit()
    return user


@pytest.fixture
def gateway():
    """Stand-in for RazorpayGateway with the async surface the services call."""
    from unittest.mock import AsyncMock, MagicMock

    fake = MagicMock()
    fake.create_order = AsyncMock()
    fake.fetch_payment_details = AsyncMock(return_value={"id": "pay_test", "method": "card"})
    return fake


@pytest.fixture
async def client(session_factory, audit, user, gateway):
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_audit_logger] = lambda: audit
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.state.rate_limiter = InMemoryRateLimiter()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    del app.state.rate_limiter
