"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- A fresh reliability registry per test
- HTTP client against the app with dependency overrides
- Order factory (event and request builders live in tests/factories.py)
"""
# משתני סביבה לפני ייבוא האפליקציה - settings נטען בזמן import
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["PAYMENT_WEBHOOK_SECRET"] = "whsec_test_secret_for_tests_only"
os.environ["ADMIN_API_KEY"] = "test-admin-api-key"
os.environ.setdefault("EMAIL_API_KEY", "re_test_key")

import itertools
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from fulfillment.api.dependencies.reliability import get_reliability
from fulfillment.core.config import settings
from fulfillment.core.reliability import ReliabilityRegistry, build_reliability_registry
from fulfillment.db.database import Base, get_db
from fulfillment.db.models.order import Order, OrderItem, OrderStatus
from fulfillment.main import app

from tests.factories import fast_retry_policy


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

_order_counter = itertools.count(1)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def reliability() -> ReliabilityRegistry:
    """Registry חדש לכל בדיקה, עם retry מהיר"""
    registry = build_reliability_registry(settings)
    registry.retry_policy = fast_retry_policy()
    return registry


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, reliability: ReliabilityRegistry):
    """Create test client with database and reliability overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_reliability] = lambda: reliability

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating pending orders with items"""
    async def _create_order(
        *,
        session_id: str | None = None,
        payment_intent_id: str | None = None,
        user_id: str = "user_1",
        customer_email: str = "buyer@example.com",
        products: tuple[str, ...] = ("course_python",),
        amount_in_cents: int = 4900,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> Order:
        n = next(_order_counter)
        order = Order(
            status=status,
            user_id=user_id,
            customer_email=customer_email,
            amount_in_cents=amount_in_cents,
            currency="usd",
            provider_session_id=session_id or f"cs_test_{n}",
            provider_payment_intent_id=payment_intent_id,
            items=[
                OrderItem(
                    product_id=product_id,
                    product_name=product_id.replace("_", " ").title(),
                    amount_in_cents=amount_in_cents // len(products),
                )
                for product_id in products
            ],
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


