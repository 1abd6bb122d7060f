"""
Idempotency Ledger - רישום עמיד של אירועים שעובדו ותוצאתם.

ה-claim הוא INSERT שנשען על המפתח הראשי event_id: בין מסירות מקבילות של
אותו אירוע רק אחת מצליחה, כל השאר מקבלות IntegrityError וקוראות את הרשומה
הקיימת. המעברים CLAIMED → PROCESSED / FAILED הם UPDATE מותנה, לא קריאה
ואחריה כתיבה.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.exceptions import InvariantViolationError
from fulfillment.core.logging import get_logger
from fulfillment.db.models.processing_record import ProcessingRecord, ProcessingStatus
from fulfillment.domain.events import FULFILLMENT_JOB_TYPE
from fulfillment.domain.services.failed_job_service import build_failed_job

logger = get_logger(__name__)

STALE_CLAIM_REASON = "stale claim"


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    existing_status: ProcessingStatus | None = None
    existing_result: dict[str, Any] | None = None
    attempt_count: int = 1


class IdempotencyLedger:
    """
    Ledger operations over ``processing_records``.

    Every method commits its own work. ``try_claim`` must therefore run before
    the caller stages anything else on the session.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def try_claim(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> ClaimResult:
        """
        Atomically claim ``event_id`` for processing.

        Returns ``ClaimResult(claimed=True)`` for exactly one caller. Everyone
        else gets the existing status and result; the existing record is never
        overwritten, only its ``attempt_count`` is bumped.

        ``payload`` is the event as received. It lets a stale claim be turned
        into a replayable failed job.
        """
        try:
            self.db.add(ProcessingRecord(
                event_id=event_id,
                event_type=event_type,
                status=ProcessingStatus.CLAIMED,
                attempt_count=1,
                payload=payload,
                claimed_at=datetime.utcnow(),
            ))
            await self.db.commit()
            logger.info(
                "Event claimed",
                extra_data={"event_id": event_id, "event_type": event_type}
            )
            return ClaimResult(claimed=True)
        except IntegrityError:
            await self.db.rollback()
        except Exception:
            # למשל "database is locked" - ה-session חייב rollback לפני retry
            await self.db.rollback()
            raise

        # הרשומה קיימת - רק מעדכנים את מונה המסירות
        await self.db.execute(
            update(ProcessingRecord)
            .where(ProcessingRecord.event_id == event_id)
            .values(attempt_count=ProcessingRecord.attempt_count + 1)
        )
        await self.db.commit()

        record = await self.lookup(event_id)
        if record is None:
            # IntegrityError בלי רשומה - לא אמור לקרות כי רשומות לא נמחקות
            raise InvariantViolationError(
                f"Processing record vanished after claim conflict: {event_id}",
                details={"event_id": event_id},
            )

        logger.info(
            "Duplicate delivery, event already claimed",
            extra_data={
                "event_id": event_id,
                "existing_status": record.status.value,
                "attempt_count": record.attempt_count,
            }
        )
        return ClaimResult(
            claimed=False,
            existing_status=record.status,
            existing_result=record.result,
            attempt_count=record.attempt_count,
        )

    async def commit(self, event_id: str, result: dict[str, Any] | None) -> None:
        """CLAIMED → PROCESSED. Raises InvariantViolationError for any other status."""
        await self._finish(
            event_id,
            ProcessingStatus.PROCESSED,
            result=result,
        )

    async def fail(self, event_id: str, reason: str) -> None:
        """CLAIMED → FAILED (terminal for the ledger)."""
        await self._finish(
            event_id,
            ProcessingStatus.FAILED,
            error=reason[:2000],
        )

    async def _finish(
        self,
        event_id: str,
        new_status: ProcessingStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        update_result = await self.db.execute(
            update(ProcessingRecord)
            .where(
                ProcessingRecord.event_id == event_id,
                ProcessingRecord.status == ProcessingStatus.CLAIMED,
            )
            .values(
                status=new_status,
                result=result,
                error=error,
                completed_at=datetime.utcnow(),
            )
        )
        await self.db.commit()

        if update_result.rowcount == 0:
            record = await self.lookup(event_id)
            current = record.status.value if record else None
            logger.error(
                "Ledger transition rejected, record is not claimed",
                extra_data={
                    "event_id": event_id,
                    "target_status": new_status.value,
                    "current_status": current,
                }
            )
            raise InvariantViolationError(
                f"Cannot mark event {event_id} as {new_status.value}: status is {current}",
                details={
                    "event_id": event_id,
                    "current_status": current,
                    "target_status": new_status.value,
                },
            )

        logger.info(
            f"Event marked {new_status.value}",
            extra_data={"event_id": event_id, "status": new_status.value}
        )

    async def lookup(self, event_id: str) -> ProcessingRecord | None:
        result = await self.db.execute(
            select(ProcessingRecord)
            .where(ProcessingRecord.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def fail_stale_claims(self, older_than: datetime) -> list[str]:
        """
        Fail CLAIMED records whose processor never finished.

        Each record moved to FAILED gets a PENDING failed job with its stored
        payload, in the same transaction, so the operator can replay it.
        Redeliveries of that event only see ``already_processed`` from now on.

        Returns the event ids that were moved to FAILED.
        """
        result = await self.db.execute(
            select(
                ProcessingRecord.event_id,
                ProcessingRecord.event_type,
                ProcessingRecord.payload,
            ).where(
                ProcessingRecord.status == ProcessingStatus.CLAIMED,
                ProcessingRecord.claimed_at < older_than,
            )
        )
        candidates = result.all()

        failed: list[str] = []
        for event_id, event_type, payload in candidates:
            update_result = await self.db.execute(
                update(ProcessingRecord)
                .where(
                    ProcessingRecord.event_id == event_id,
                    ProcessingRecord.status == ProcessingStatus.CLAIMED,
                    ProcessingRecord.claimed_at < older_than,
                )
                .values(
                    status=ProcessingStatus.FAILED,
                    error=STALE_CLAIM_REASON,
                    completed_at=datetime.utcnow(),
                )
            )
            if not update_result.rowcount:
                continue

            if payload is None:
                # רשומה בלי payload - עדיין גלויה למפעיל, replay יידחה כעסקי
                logger.warning(
                    "Stale claim has no stored payload",
                    extra_data={"event_id": event_id, "event_type": event_type}
                )
            self.db.add(build_failed_job(
                FULFILLMENT_JOB_TYPE,
                payload or {"id": event_id, "type": event_type},
                STALE_CLAIM_REASON,
                event_id=event_id,
            ))
            failed.append(event_id)
        await self.db.commit()

        if failed:
            logger.warning(
                "Stale claims failed and escalated",
                extra_data={"count": len(failed), "event_ids": failed[:20]}
            )
        return failed
