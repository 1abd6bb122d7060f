"""
Outbox Service - Transactional Outbox Pattern for email

Emails are queued in the same transaction as the order change that caused
them and sent later by the Celery worker, so the ingress path never waits for
the email provider and a provider outage never rolls back a fulfillment.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func, or_

from fulfillment.core.config import settings
from fulfillment.db.models.outbox_message import OutboxMessage, EmailMessageType, MessageStatus


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff seconds with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    Capped at max_backoff_seconds without computing huge powers when
    retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # 2**retry_count >= ceil(max/base) בלי לחשב את החזקה עצמה
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    threshold = (required_multiplier - 1).bit_length()

    if retry_count >= threshold:
        return max_backoff_seconds

    backoff = base_seconds * (1 << retry_count)
    return min(backoff, max_backoff_seconds)


class OutboxService:
    """Queue and track outbox emails. ``queue_email`` never commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_email(
        self,
        message_type: EmailMessageType,
        recipient: str,
        subject: str,
        html: str,
        order_id: int | None = None,
    ) -> OutboxMessage:
        message = OutboxMessage(
            message_type=message_type,
            recipient=recipient,
            subject=subject,
            html=html,
            order_id=order_id,
            status=MessageStatus.PENDING,
            retry_count=0,
            max_retries=settings.OUTBOX_MAX_RETRIES,
        )
        self.db.add(message)
        return message

    async def get_pending_messages(self, limit: int = 50) -> List[OutboxMessage]:
        """Pending messages whose backoff has elapsed, oldest first"""
        now = datetime.utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_message(self, message_id: int) -> OutboxMessage | None:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_processing(self, message_id: int) -> bool:
        """
        PENDING → PROCESSING as a conditional update.

        Returns False when another worker already took the message.
        """
        result = await self.db.execute(
            update(OutboxMessage)
            .where(
                OutboxMessage.id == message_id,
                OutboxMessage.status == MessageStatus.PENDING,
            )
            .values(status=MessageStatus.PROCESSING)
        )
        await self.db.commit()
        return result.rowcount > 0

    async def release(self, message_id: int) -> None:
        """PROCESSING → PENDING without counting a delivery attempt"""
        await self.db.execute(
            update(OutboxMessage)
            .where(
                OutboxMessage.id == message_id,
                OutboxMessage.status == MessageStatus.PROCESSING,
            )
            .values(status=MessageStatus.PENDING)
        )
        await self.db.commit()

    async def mark_as_sent(self, message_id: int, provider_message_id: str | None = None) -> None:
        message = await self.get_message(message_id)
        if message:
            message.status = MessageStatus.SENT
            message.processed_at = datetime.utcnow()
            message.provider_message_id = provider_message_id
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """Record a failed send; retry with backoff until max_retries"""
        message = await self.get_message(message_id)
        if message:
            message.retry_count += 1
            message.last_error = error[:1000]

            if message.retry_count >= message.max_retries:
                message.status = MessageStatus.FAILED
                message.processed_at = datetime.utcnow()
            else:
                message.status = MessageStatus.PENDING
                backoff_seconds = _calculate_backoff_seconds(
                    message.retry_count,
                    base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                    max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
                )
                message.next_retry_at = datetime.utcnow() + timedelta(
                    seconds=backoff_seconds
                )

            await self.db.commit()

    async def count_for_order(self, order_id: int, message_type: EmailMessageType) -> int:
        result = await self.db.execute(
            select(func.count(OutboxMessage.id)).where(
                OutboxMessage.order_id == order_id,
                OutboxMessage.message_type == message_type,
            )
        )
        return result.scalar_one()

    async def delete_sent_before(self, cutoff: datetime) -> int:
        result = await self.db.execute(
            delete(OutboxMessage).where(
                OutboxMessage.status == MessageStatus.SENT,
                OutboxMessage.processed_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount
