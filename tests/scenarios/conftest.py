"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- שליחת webhook חתום דרך ה-API
- engine על קובץ SQLite עבור תרחישי מקביליות (כל session בחיבור משלו)
- ספק מייל מדומה עבור ה-worker
- פונקציות אימות DB (סטטוס הזמנה, outbox, entitlements, ledger)
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from httpx import Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fulfillment.db.database import Base
from fulfillment.db.models.entitlement import Entitlement
from fulfillment.db.models.order import Order, OrderItem, OrderStatus
from fulfillment.db.models.outbox_message import EmailMessageType, OutboxMessage
from fulfillment.db.models.processing_record import ProcessingRecord, ProcessingStatus

from tests.factories import signed_request

WEBHOOK_URL = "/api/webhooks/payments"


# ============================================================================
# שליחת webhooks
# ============================================================================

async def send_webhook(client, event) -> Response:
    """שולח אירוע חתום ל-endpoint כמו שספק התשלומים עושה"""
    body, headers = signed_request(event.to_payload())
    return await client.post(WEBHOOK_URL, content=body, headers=headers)


# ============================================================================
# DB על קובץ - לתרחישי מקביליות
# ============================================================================

@pytest.fixture
async def file_session_factory(tmp_path):
    """
    sessionmaker על קובץ SQLite. NullPool = חיבור נפרד לכל session, כך
    ש-INSERT מקבילים באמת מתחרים על ה-unique של event_id.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'scenario.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


async def create_order(
    session: AsyncSession,
    session_id: str,
    *,
    user_id: str = "user_1",
    products: tuple[str, ...] = ("course_python",),
) -> int:
    order = Order(
        status=OrderStatus.PENDING,
        user_id=user_id,
        customer_email="buyer@example.com",
        amount_in_cents=4900,
        currency="usd",
        provider_session_id=session_id,
        items=[
            OrderItem(product_id=p, product_name=p, amount_in_cents=4900 // len(products))
            for p in products
        ],
    )
    session.add(order)
    await session.commit()
    return order.id


# ============================================================================
# ספק מייל מדומה
# ============================================================================

@pytest.fixture
def mock_email_provider():
    """httpx.AsyncClient מדומה שמחזיר 200 לכל שליחה"""
    response = MagicMock(spec=Response)
    response.status_code = 200
    response.json.return_value = {"id": "em_scenario"}
    response.text = ""

    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(return_value=response)
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)
        mock_client.return_value = mock_instance
        yield mock_instance


# ============================================================================
# פונקציות אימות
# ============================================================================

async def assert_order_status(db: AsyncSession, order_id: int, expected: OrderStatus) -> Order:
    result = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    order = result.scalar_one()
    assert order.status == expected, f"expected {expected}, got {order.status}"
    return order


async def assert_outbox_count(
    db: AsyncSession,
    order_id: int,
    message_type: EmailMessageType,
    expected: int,
) -> None:
    result = await db.execute(
        select(func.count(OutboxMessage.id)).where(
            OutboxMessage.order_id == order_id,
            OutboxMessage.message_type == message_type,
        )
    )
    actual = result.scalar_one()
    assert actual == expected, f"expected {expected} {message_type.value} emails, got {actual}"


async def assert_entitlements(
    db: AsyncSession,
    user_id: str,
    *,
    active: int,
    total: int | None = None,
) -> None:
    result = await db.execute(
        select(Entitlement)
        .where(Entitlement.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    rows = list(result.scalars().all())
    assert sum(1 for e in rows if e.active) == active
    if total is not None:
        assert len(rows) == total


async def assert_ledger_status(db: AsyncSession, event_id: str, expected: ProcessingStatus) -> ProcessingRecord:
    result = await db.execute(
        select(ProcessingRecord)
        .where(ProcessingRecord.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one()
    assert record.status == expected
    return record
