"""
Failed-Job Tracker - עבודות שנכשלו, גלויות למפעיל, עם retry ו-abandon.

מחזור חיים:
    PENDING ──retry──▶ RETRYING ──הצלחה──▶ RESOLVED
       ▲                   │
       └──────כשל──────────┘
    PENDING / RETRYING ──abandon──▶ ABANDONED

retry מותר רק מ-PENDING ורק כל עוד attempts < max_attempts.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.config import settings
from fulfillment.core.exceptions import (
    ErrorCode,
    FailedJobNotFoundError,
    FailedJobStateError,
)
from fulfillment.core.logging import get_logger
from fulfillment.core.reliability import ReliabilityRegistry
from fulfillment.db.models.audit_log import AuditLog, AuditActionType
from fulfillment.db.models.failed_job import (
    FailedJob,
    FailedJobStatus,
    TERMINAL_FAILED_JOB_STATUSES,
)

logger = get_logger(__name__)


def replay_event_id(event_id: str, attempt: int) -> str:
    """מזהה סינתטי לכל replay כדי לקבל claim חדש ב-ledger"""
    return f"{event_id}:replay:{attempt}"


def build_failed_job(
    job_type: str,
    payload: dict[str, Any],
    error: str,
    *,
    event_id: str | None = None,
    max_attempts: int | None = None,
) -> FailedJob:
    """PENDING job לא שמור - לשימוש בתוך טרנזקציה של מי שקורא"""
    return FailedJob(
        job_type=job_type,
        event_id=event_id,
        payload=payload,
        error=error,
        status=FailedJobStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts or settings.FAILED_JOB_MAX_ATTEMPTS,
    )


class FailedJobTracker:
    def __init__(self, db: AsyncSession, reliability: ReliabilityRegistry | None = None):
        self.db = db
        self.reliability = reliability

    async def record(
        self,
        job_type: str,
        payload: dict[str, Any],
        error: str,
        *,
        event_id: str | None = None,
        max_attempts: int | None = None,
    ) -> int:
        """Store a PENDING job with the payload as received. Returns the job id."""
        job = build_failed_job(
            job_type, payload, error, event_id=event_id, max_attempts=max_attempts
        )
        self.db.add(job)
        await self.db.commit()

        logger.warning(
            "Failed job recorded",
            extra_data={"job_id": job.id, "job_type": job_type, "error": error}
        )
        return job.id

    async def get(self, job_id: int) -> FailedJob:
        result = await self.db.execute(
            select(FailedJob)
            .where(FailedJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise FailedJobNotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        status: FailedJobStatus | None = None,
        limit: int = 50,
    ) -> list[FailedJob]:
        query = select(FailedJob).order_by(FailedJob.created_at.desc(), FailedJob.id.desc())
        if status is not None:
            query = query.where(FailedJob.status == status)
        result = await self.db.execute(query.limit(limit))
        return list(result.scalars().all())

    async def summary(self) -> dict[str, int]:
        result = await self.db.execute(
            select(FailedJob.status, func.count(FailedJob.id)).group_by(FailedJob.status)
        )
        counts = {status.value: 0 for status in FailedJobStatus}
        for status, count in result.all():
            counts[status.value] = count
        return counts

    async def start_retry(self, job_id: int) -> FailedJob:
        """
        PENDING → RETRYING, attempts += 1, retried_at = now.

        Conditional update, so two operators clicking retry at once cannot
        both start a replay.

        Raises:
            FailedJobNotFoundError, FailedJobStateError
        """
        job = await self.get(job_id)

        if job.status != FailedJobStatus.PENDING:
            raise FailedJobStateError(
                job_id,
                f"Job is {job.status.value}, only PENDING jobs can be retried",
                details={"status": job.status.value},
            )
        if job.attempts >= job.max_attempts:
            raise FailedJobStateError(
                job_id,
                f"Job reached max attempts ({job.attempts}/{job.max_attempts})",
                error_code=ErrorCode.FAILED_JOB_MAX_ATTEMPTS,
                details={"attempts": job.attempts, "max_attempts": job.max_attempts},
            )

        now = datetime.utcnow()
        result = await self.db.execute(
            update(FailedJob)
            .where(
                FailedJob.id == job_id,
                FailedJob.status == FailedJobStatus.PENDING,
                FailedJob.attempts < FailedJob.max_attempts,
            )
            .values(
                status=FailedJobStatus.RETRYING,
                attempts=FailedJob.attempts + 1,
                retried_at=now,
            )
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise FailedJobStateError(job_id, "Job was modified concurrently")

        self.db.add(AuditLog(
            action=AuditActionType.FAILED_JOB_RETRIED,
            entity_type="failed_job",
            entity_id=str(job_id),
            details={"attempt": job.attempts + 1, "job_type": job.job_type},
        ))
        await self.db.commit()
        return await self.get(job_id)

    async def retry(self, job_id: int) -> FailedJob:
        """
        Start a retry and replay the stored payload through the webhook processor.

        Replay outcome: success → RESOLVED; error → back to PENDING with the new error.
        """
        # import מקומי - webhook_processor מייבא את המודול הזה
        from fulfillment.domain.events import PaymentEvent
        from fulfillment.domain.services.webhook_processor import WebhookProcessor, describe_failure

        if self.reliability is None:
            raise RuntimeError("FailedJobTracker.retry requires a reliability registry")

        job = await self.start_retry(job_id)
        event = PaymentEvent.model_validate(job.payload)
        replay = event.with_id(replay_event_id(event.id, job.attempts))

        logger.info(
            "Replaying failed job",
            extra_data={"job_id": job_id, "attempt": job.attempts, "replay_event_id": replay.id}
        )

        processor = WebhookProcessor(self.db, self.reliability)
        try:
            outcome = await processor.process(replay, replay_of_job_id=job_id)
        except Exception as exc:
            # replay שזרק חריגה מחזיר את ה-job ל-PENDING
            await self.db.rollback()
            await self._return_to_pending(job_id, describe_failure(exc))
            raise

        job = await self.get(job_id)
        if outcome.ok:
            job.status = FailedJobStatus.RESOLVED
            job.resolved_at = datetime.utcnow()
        else:
            job.status = FailedJobStatus.PENDING
            replay_record = await processor.ledger.lookup(replay.id)
            job.error = (replay_record.error if replay_record and replay_record.error else outcome.message)
        await self.db.commit()

        logger.info(
            "Failed job replay finished",
            extra_data={"job_id": job_id, "outcome": outcome.status, "status": job.status.value}
        )
        return job

    async def abandon(self, job_id: int, reason: str | None = None) -> FailedJob:
        """Any non-terminal status → ABANDONED"""
        job = await self.get(job_id)
        if job.status in TERMINAL_FAILED_JOB_STATUSES:
            raise FailedJobStateError(
                job_id,
                f"Job is already {job.status.value}",
                details={"status": job.status.value},
            )

        previous = job.status.value
        job.status = FailedJobStatus.ABANDONED
        job.resolved_at = datetime.utcnow()
        self.db.add(AuditLog(
            action=AuditActionType.FAILED_JOB_ABANDONED,
            entity_type="failed_job",
            entity_id=str(job_id),
            details={"previous_status": previous, "reason": reason},
        ))
        await self.db.commit()

        logger.info(
            "Failed job abandoned",
            extra_data={"job_id": job_id, "previous_status": previous, "reason": reason}
        )
        return job

    async def _return_to_pending(self, job_id: int, error: str) -> None:
        """RETRYING → PENDING after a replay that raised instead of returning"""
        try:
            await self.db.execute(
                update(FailedJob)
                .where(FailedJob.id == job_id, FailedJob.status == FailedJobStatus.RETRYING)
                .values(status=FailedJobStatus.PENDING, error=error[:2000])
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error(
                "Could not return failed job to PENDING",
                extra_data={"job_id": job_id, "error": error},
                exc_info=True,
            )
            return

        logger.warning(
            "Failed job replay raised, returned to PENDING",
            extra_data={"job_id": job_id, "error": error}
        )
