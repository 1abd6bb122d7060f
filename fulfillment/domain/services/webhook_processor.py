"""
Webhook Processor - the one place that decides retry / commit / escalate.

    claim in ledger
      → not claimed: already_processed (duplicate or concurrent delivery)
      → claimed: dispatch to the fulfillment service,
                 wrapped as retry(bulkhead(circuit_breaker(handler))):
                 each retry attempt takes a bulkhead slot, then goes
                 through the "db" breaker
          → success: ledger commit → processed
          → failure: ledger fail + failed job with the original payload → error
"""
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.exceptions import (
    BusinessRuleError,
    InvariantViolationError,
    MaxRetriesExceededError,
)
from fulfillment.core.logging import bind_event_id, get_logger
from fulfillment.core.reliability import DB_BREAKER, FULFILLMENT_BULKHEAD, ReliabilityRegistry
from fulfillment.core.retry import retry_async
from fulfillment.db.models.processing_record import ProcessingStatus
from fulfillment.domain.events import (
    CHECKOUT_COMPLETED_TYPES,
    CHECKOUT_EXPIRED_TYPES,
    FULFILLMENT_JOB_TYPE,
    REFUND_TYPES,
    PaymentEvent,
    refund_reference,
    session_reference,
)
from fulfillment.domain.services.failed_job_service import FailedJobTracker
from fulfillment.domain.services.fulfillment_service import FulfillmentService
from fulfillment.domain.services.idempotency_ledger import IdempotencyLedger

logger = get_logger(__name__)

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"
ERROR = "error"


@dataclass(frozen=True)
class ProcessResult:
    status: str
    message: str
    result: dict[str, Any] | None = None
    failed_job_id: int | None = None

    @property
    def ok(self) -> bool:
        return self.status != ERROR


def describe_failure(error: BaseException) -> str:
    """Failure reason stored in the ledger and on the failed job"""
    if isinstance(error, MaxRetriesExceededError):
        last = error.last_error
        return f"max retries exceeded after {error.attempts} attempts: {type(last).__name__}: {last}"
    return f"{type(error).__name__}: {error}"


class WebhookProcessor:
    def __init__(self, db: AsyncSession, reliability: ReliabilityRegistry):
        self.db = db
        self.reliability = reliability
        self.ledger = IdempotencyLedger(db)
        self.fulfillment = FulfillmentService(db, reliability.flags)

    async def process(
        self,
        event: PaymentEvent,
        *,
        replay_of_job_id: int | None = None,
    ) -> ProcessResult:
        """
        Process one provider event exactly once.

        ``replay_of_job_id`` marks an operator replay of a failed job: a failure
        then updates that job instead of recording a new one.
        """
        with bind_event_id(event.id):
            return await self._process(event, replay_of_job_id)

    async def _process(self, event: PaymentEvent, replay_of_job_id: int | None) -> ProcessResult:
        try:
            claim = await retry_async(
                lambda: self.ledger.try_claim(event.id, event.type, event.to_payload()),
                self.reliability.retry_policy,
                operation="ledger claim",
            )
        except Exception as exc:
            # בלי claim אין מה לסמן כנכשל; הספק ישלח שוב
            logger.error(
                "Could not claim event",
                extra_data={"event_type": event.type, "error": describe_failure(exc)},
                exc_info=True,
            )
            return ProcessResult(ERROR, "Could not record event")

        if not claim.claimed:
            return self._duplicate_result(claim.existing_status, claim.existing_result)

        try:
            result = await self._run_handler(event)
        except Exception as exc:
            return await self._escalate(event, exc, replay_of_job_id)

        try:
            await self.ledger.commit(event.id, result)
        except InvariantViolationError:
            # הרשומה כבר סומנה FAILED (למשל על ידי ה-sweeper) - השינויים העסקיים
            # נשמרו אבל ה-ledger לא יכול לעבור ל-PROCESSED
            logger.error(
                "Ledger commit rejected after successful fulfillment",
                extra_data={"event_type": event.type, "result": result},
            )
            return ProcessResult(ERROR, "Ledger commit rejected", result=result)
        except Exception:
            # השינויים העסקיים נשמרו, הרשומה נשארת CLAIMED עד שה-sweeper יסלים אותה
            await self.db.rollback()
            logger.error(
                "Ledger commit failed after successful fulfillment",
                extra_data={"event_type": event.type, "result": result},
                exc_info=True,
            )
            return ProcessResult(ERROR, "Ledger commit failed", result=result)

        logger.info(
            "Event processed",
            extra_data={"event_type": event.type, "result": result}
        )
        return ProcessResult(PROCESSED, "Event processed", result=result)

    @staticmethod
    def _duplicate_result(
        status: ProcessingStatus | None,
        result: dict[str, Any] | None,
    ) -> ProcessResult:
        if status == ProcessingStatus.CLAIMED:
            message = "Event is being processed by another delivery"
        elif status == ProcessingStatus.FAILED:
            message = "Event previously failed and was escalated"
        else:
            message = "Event already processed"
        return ProcessResult(ALREADY_PROCESSED, message, result=result)

    async def _run_handler(self, event: PaymentEvent) -> dict[str, Any]:
        breaker = self.reliability.breakers.get_or_create(DB_BREAKER)
        bulkhead = self.reliability.bulkheads.get_or_create(FULFILLMENT_BULKHEAD)

        async def attempt() -> dict[str, Any]:
            return await bulkhead.execute(lambda: breaker.execute(self._dispatch, event))

        return await retry_async(
            attempt,
            self.reliability.retry_policy,
            operation=f"fulfillment {event.type}",
        )

    async def _dispatch(self, event: PaymentEvent) -> dict[str, Any]:
        obj = event.object

        if event.type in CHECKOUT_COMPLETED_TYPES:
            payment_status = obj.get("payment_status")
            if payment_status is not None and payment_status != "paid":
                # תשלום מושהה (למשל העברה בנקאית) - יגיע אירוע נוסף כשיושלם
                return {"action": "awaiting_payment", "payment_status": payment_status}
            reference = session_reference(obj)
            if not reference:
                raise BusinessRuleError("Checkout event has no session id")
            return (await self.fulfillment.fulfill_order(reference, obj)).to_dict()

        if event.type in REFUND_TYPES:
            reference = refund_reference(obj)
            if not reference:
                raise BusinessRuleError("Refund event has no order reference")
            return (await self.fulfillment.revoke_entitlement(reference, refund_details=obj)).to_dict()

        if event.type in CHECKOUT_EXPIRED_TYPES:
            reference = session_reference(obj)
            if not reference:
                raise BusinessRuleError("Expired checkout event has no session id")
            return (await self.fulfillment.mark_order_failed(reference)).to_dict()

        logger.info("Unhandled event type", extra_data={"event_type": event.type})
        return {"action": "unhandled", "handled": False}

    async def _escalate(
        self,
        event: PaymentEvent,
        error: Exception,
        replay_of_job_id: int | None,
    ) -> ProcessResult:
        reason = describe_failure(error)
        logger.error(
            "Event processing failed",
            extra_data={
                "event_type": event.type,
                "error": reason,
                "replay_of_job_id": replay_of_job_id,
            },
        )

        left_claimed = False
        try:
            await self.ledger.fail(event.id, reason)
        except InvariantViolationError:
            logger.error(
                "Ledger fail rejected, record no longer claimed",
                extra_data={"event_type": event.type},
            )
        except Exception:
            # הרשומה נשארת CLAIMED - ה-sweeper יסמן אותה וייצור ממנה failed job
            await self.db.rollback()
            left_claimed = True
            logger.error(
                "Could not mark event failed in ledger",
                extra_data={"event_type": event.type, "error": reason},
                exc_info=True,
            )

        failed_job_id = None
        if replay_of_job_id is None and not left_claimed:
            tracker = FailedJobTracker(self.db, self.reliability)
            try:
                failed_job_id = await tracker.record(
                    FULFILLMENT_JOB_TYPE,
                    event.to_payload(),
                    reason,
                    event_id=event.id,
                )
            except Exception:
                await self.db.rollback()
                logger.error(
                    "Could not record failed job",
                    extra_data={
                        "event_type": event.type,
                        "error": reason,
                        "payload": event.to_payload(),
                    },
                    exc_info=True,
                )

        return ProcessResult(ERROR, "Processing failed", failed_job_id=failed_job_id)
