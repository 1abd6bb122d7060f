"""
Celery Tasks

Worker side of the Transactional Outbox pattern plus the periodic ledger
maintenance. Pending emails are sent through the email provider behind the
worker's own "email" circuit breaker.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.workers.celery_app import celery_app
from fulfillment.core.config import settings
from fulfillment.core.exceptions import CircuitBreakerOpenError
from fulfillment.core.logging import get_logger, log_async_operation, set_correlation_id
from fulfillment.core.reliability import (
    EMAIL_BREAKER,
    ReliabilityRegistry,
    build_reliability_registry,
)
from fulfillment.db.database import get_task_session
from fulfillment.db.models.outbox_message import OutboxMessage
from fulfillment.domain.services.email_service import EmailService
from fulfillment.domain.services.idempotency_ledger import IdempotencyLedger
from fulfillment.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)

# registry של תהליך ה-worker - ה-breaker של המייל שורד בין הרצות של tasks
worker_reliability = build_reliability_registry(settings)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _process_single_message(
    db: AsyncSession,
    message: OutboxMessage,
    reliability: ReliabilityRegistry,
) -> tuple[bool, str]:
    """Send one outbox email. Returns (success, description)."""
    outbox_service = OutboxService(db)

    if not await outbox_service.mark_as_processing(message.id):
        # worker אחר כבר לקח את ההודעה
        return False, "Message already taken"

    email_service = EmailService(db, reliability.breakers.get_or_create(EMAIL_BREAKER))
    try:
        result = await email_service.send_email(message.recipient, message.subject, message.html)
    except CircuitBreakerOpenError as e:
        # לא נספר כניסיון - ההודעה חוזרת ל-PENDING בלי להעלות retry_count
        await outbox_service.release(message.id)
        logger.info(
            "Email breaker open, message deferred",
            extra_data={"message_id": message.id, "retry_after": e.retry_after_seconds}
        )
        return False, "Email circuit open"
    except Exception as e:
        await outbox_service.mark_as_failed(message.id, str(e))
        return False, str(e)

    await outbox_service.mark_as_sent(message.id, result.get("id"))
    return True, "Message sent successfully"


@log_async_operation("process_outbox_batch")
async def process_outbox_batch(
    db: AsyncSession,
    reliability: ReliabilityRegistry,
    limit: int = 50,
) -> list[dict[str, Any]]:
    messages = await OutboxService(db).get_pending_messages(limit=limit)

    results = []
    for message in messages:
        success, result = await _process_single_message(db, message, reliability)
        results.append({
            "message_id": message.id,
            "success": success,
            "result": result
        })
    return results


async def fail_stale_claims_once(db: AsyncSession, stale_after_seconds: int) -> list[str]:
    cutoff = datetime.utcnow() - timedelta(seconds=stale_after_seconds)
    return await IdempotencyLedger(db).fail_stale_claims(cutoff)


async def cleanup_sent_outbox_once(db: AsyncSession, days: int) -> int:
    cutoff = datetime.utcnow() - timedelta(days=days)
    deleted = await OutboxService(db).delete_sent_before(cutoff)
    logger.info(
        "Cleaned up sent outbox messages",
        extra_data={"deleted": deleted, "cutoff_days": days},
    )
    return deleted


@celery_app.task(name="fulfillment.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """
    Process pending emails from the outbox.
    This task runs periodically to ensure reliable delivery.
    """

    async def _process():
        async with get_task_session() as db:
            return await process_outbox_batch(db, worker_reliability)

    return run_async(_process())


@celery_app.task(name="fulfillment.workers.tasks.send_message")
def send_message(message_id: int):
    """Send a specific outbox email by ID"""

    async def _send():
        async with get_task_session() as db:
            message = await OutboxService(db).get_message(message_id)
            if not message:
                return {"error": "Message not found"}

            success, result = await _process_single_message(db, message, worker_reliability)
            return {"success": success, "result": result}

    return run_async(_send())


@celery_app.task(name="fulfillment.workers.tasks.fail_stale_claims")
def fail_stale_claims(stale_after_seconds: int | None = None):
    """Move processing records stuck in CLAIMED to FAILED"""

    async def _sweep():
        async with get_task_session() as db:
            failed = await fail_stale_claims_once(
                db, stale_after_seconds or settings.STALE_CLAIM_SECONDS
            )
            return {"failed": len(failed), "event_ids": failed}

    return run_async(_sweep())


@celery_app.task(name="fulfillment.workers.tasks.cleanup_sent_outbox_messages")
def cleanup_sent_outbox_messages(days: int | None = None):
    """Delete sent outbox emails older than the retention window"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await cleanup_sent_outbox_once(db, days or settings.OUTBOX_RETENTION_DAYS)
            return {"deleted": deleted}

    return run_async(_cleanup())
