"""
Fulfillment Service - grants and revokes entitlements for orders.

Each operation runs in one transaction on the injected session: the order row
is locked, the order status changes, entitlements are upserted or deactivated,
and the customer email is queued in the outbox. Either all of it commits or
none of it does.

Every operation is idempotent on its own: completing a completed order or
refunding a refunded order is a no-op, so a replayed event is harmless even
when it carries a fresh ledger id.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.config import settings
from fulfillment.core.exceptions import OrderNotFoundError
from fulfillment.core.feature_flags import FeatureFlags, PURCHASE_EMAILS, REFUND_EMAILS
from fulfillment.core.logging import get_logger
from fulfillment.db.models.audit_log import AuditLog, AuditActionType
from fulfillment.db.models.entitlement import Entitlement
from fulfillment.db.models.order import Order, OrderStatus
from fulfillment.db.models.outbox_message import EmailMessageType
from fulfillment.domain.services import email_templates
from fulfillment.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)

REFUND_REASON = "refund"


@dataclass
class FulfillmentResult:
    """Summary stored as the ledger result of a processed event"""
    action: str
    order_id: int | None = None
    entitlements: list[str] = field(default_factory=list)
    email_queued: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "order_id": self.order_id,
            "entitlements": self.entitlements,
            "email_queued": self.email_queued,
        }


class FulfillmentService:
    def __init__(self, db: AsyncSession, flags: FeatureFlags):
        self.db = db
        self.flags = flags
        self.outbox = OutboxService(db)

    async def _lock_order(self, reference: str) -> Order:
        """
        Load and lock the order matched by provider session id or payment intent.

        Raises:
            OrderNotFoundError
        """
        result = await self.db.execute(
            select(Order)
            .where(
                or_(
                    Order.provider_session_id == reference,
                    Order.provider_payment_intent_id == reference,
                )
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalars().first()
        if order is None:
            raise OrderNotFoundError(reference)
        return order

    async def fulfill_order(
        self,
        provider_session_id: str,
        session_details: dict[str, Any] | None = None,
    ) -> FulfillmentResult:
        """
        Mark the order completed and grant an active entitlement per product.

        - completed order: no-op
        - refunded or failed order: skipped, access is never granted
        - missing order: OrderNotFoundError
        """
        details = session_details or {}
        try:
            order = await self._lock_order(provider_session_id)
            order_id = order.id

            if order.status == OrderStatus.COMPLETED:
                await self.db.rollback()
                logger.info(
                    "Order already fulfilled, skipping",
                    extra_data={"order_id": order_id}
                )
                return FulfillmentResult(action="already_fulfilled", order_id=order_id)

            if order.status in (OrderStatus.REFUNDED, OrderStatus.FAILED):
                status = order.status.value
                await self.db.rollback()
                logger.warning(
                    "Completion for closed order ignored",
                    extra_data={"order_id": order_id, "status": status}
                )
                return FulfillmentResult(action="skipped", order_id=order_id)

            now = datetime.utcnow()
            order.status = OrderStatus.COMPLETED
            order.fulfilled_at = now
            self._apply_session_details(order, details)

            granted: list[str] = []
            for item in order.items:
                await self._grant(order, item.product_id)
                granted.append(item.product_id)

            email_queued = False
            if self.flags.is_enabled(PURCHASE_EMAILS):
                subject, html = email_templates.purchase_confirmation(order, settings.PUBLIC_URL)
                await self.outbox.queue_email(
                    EmailMessageType.PURCHASE_CONFIRMATION,
                    order.customer_email,
                    subject,
                    html,
                    order_id=order.id,
                )
                email_queued = True

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Order fulfilled",
            extra_data={
                "order_id": order_id,
                "entitlements": granted,
                "email_queued": email_queued,
            }
        )
        return FulfillmentResult(
            action="fulfilled",
            order_id=order_id,
            entitlements=granted,
            email_queued=email_queued,
        )

    @staticmethod
    def _apply_session_details(order: Order, details: dict[str, Any]) -> None:
        if details.get("payment_intent") and not order.provider_payment_intent_id:
            order.provider_payment_intent_id = details["payment_intent"]
        customer = details.get("customer_details") or {}
        if customer.get("name") and not order.customer_name:
            order.customer_name = customer["name"]
        if details.get("amount_total") is not None:
            order.amount_in_cents = details["amount_total"]
        if details.get("currency"):
            order.currency = details["currency"].lower()

    async def _grant(self, order: Order, product_id: str) -> None:
        """Upsert an active entitlement; a revoked one is reactivated"""
        existing = await self._get_entitlement(order.user_id, product_id)
        if existing is None:
            try:
                async with self.db.begin_nested():
                    self.db.add(Entitlement(
                        user_id=order.user_id,
                        product_id=product_id,
                        order_id=order.id,
                        active=True,
                        expires_at=None,
                    ))
                return
            except IntegrityError:
                # נוצרה במקביל על ידי הזמנה אחרת של אותו משתמש
                existing = await self._get_entitlement(order.user_id, product_id)
                if existing is None:
                    raise

        existing.active = True
        existing.order_id = order.id
        existing.revoked_at = None
        existing.revoke_reason = None

    async def _get_entitlement(self, user_id: str, product_id: str) -> Entitlement | None:
        result = await self.db.execute(
            select(Entitlement)
            .where(Entitlement.user_id == user_id, Entitlement.product_id == product_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def revoke_entitlement(
        self,
        reference: str,
        reason: str = REFUND_REASON,
        refund_details: dict[str, Any] | None = None,
    ) -> FulfillmentResult:
        """
        Mark the order refunded and deactivate the entitlements it granted.

        - refunded order: no-op
        - pending order: voided (refunded before it was ever fulfilled)
        - missing order: OrderNotFoundError
        """
        try:
            order = await self._lock_order(reference)
            order_id = order.id

            if order.status == OrderStatus.REFUNDED:
                await self.db.rollback()
                logger.info(
                    "Order already refunded, skipping",
                    extra_data={"order_id": order_id}
                )
                return FulfillmentResult(action="already_refunded", order_id=order_id)

            was_pending = order.status == OrderStatus.PENDING
            now = datetime.utcnow()
            order.status = OrderStatus.REFUNDED
            order.refunded_at = now

            active_result = await self.db.execute(
                select(Entitlement)
                .where(Entitlement.order_id == order_id, Entitlement.active.is_(True))
                .execution_options(populate_existing=True)
            )
            revoked: list[str] = []
            for entitlement in active_result.scalars().all():
                entitlement.active = False
                entitlement.revoked_at = now
                entitlement.revoke_reason = reason
                revoked.append(entitlement.product_id)

            self.db.add(AuditLog(
                action=AuditActionType.REFUND_PROCESSED,
                actor="webhook",
                entity_type="order",
                entity_id=str(order_id),
                details={
                    "reference": reference,
                    "reason": reason,
                    "revoked_products": revoked,
                    "voided": was_pending,
                    "amount_refunded": (refund_details or {}).get("amount_refunded"),
                },
            ))

            email_queued = False
            if not was_pending and self.flags.is_enabled(REFUND_EMAILS):
                subject, html = email_templates.refund_notification(order)
                await self.outbox.queue_email(
                    EmailMessageType.REFUND_NOTIFICATION,
                    order.customer_email,
                    subject,
                    html,
                    order_id=order_id,
                )
                email_queued = True

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        action = "voided" if was_pending else "refunded"
        logger.info(
            f"Order {action}",
            extra_data={"order_id": order_id, "revoked": revoked, "reason": reason}
        )
        return FulfillmentResult(
            action=action,
            order_id=order_id,
            entitlements=revoked,
            email_queued=email_queued,
        )

    async def mark_order_failed(self, provider_session_id: str) -> FulfillmentResult:
        """Checkout session expired: pending → failed, anything else is a no-op"""
        try:
            order = await self._lock_order(provider_session_id)
            order_id = order.id
            if order.status != OrderStatus.PENDING:
                await self.db.rollback()
                return FulfillmentResult(action="ignored", order_id=order_id)

            order.status = OrderStatus.FAILED
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Order marked failed", extra_data={"order_id": order_id})
        return FulfillmentResult(action="failed", order_id=order_id)
