"""
Admin Failed-Job Endpoints - ניהול עבודות שנכשלו ושליפת רשומות ledger.

1. רשימת עבודות (עם סינון לפי סטטוס) + סיכום לפי סטטוס
2. פרטי עבודה בודדת
3. retry - replay של ה-payload השמור דרך ה-WebhookProcessor
4. abandon - סגירה ידנית ללא replay
5. רשומת processing לפי event_id
"""
from datetime import datetime
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.api.dependencies.admin_auth import require_admin_api_key
from fulfillment.api.dependencies.reliability import get_reliability
from fulfillment.core.exceptions import FailedJobNotFoundError, FailedJobStateError
from fulfillment.core.logging import get_logger
from fulfillment.core.reliability import ReliabilityRegistry
from fulfillment.db.database import get_db
from fulfillment.db.models.failed_job import FailedJob, FailedJobStatus
from fulfillment.domain.services.failed_job_service import FailedJobTracker
from fulfillment.domain.services.idempotency_ledger import IdempotencyLedger

logger = get_logger(__name__)

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class FailedJobResponse(BaseModel):
    id: int
    job_type: str
    event_id: str | None
    status: str
    error: str | None
    attempts: int
    max_attempts: int
    payload: dict[str, Any]
    created_at: datetime | None
    retried_at: datetime | None
    resolved_at: datetime | None


class FailedJobListResponse(BaseModel):
    jobs: list[FailedJobResponse]
    total: int


class FailedJobSummaryResponse(BaseModel):
    counts: dict[str, int] = Field(description="מספר עבודות לפי סטטוס")
    total: int


class AbandonRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class ProcessingRecordResponse(BaseModel):
    event_id: str
    event_type: str
    status: str
    result: dict[str, Any] | None
    error: str | None
    attempt_count: int
    claimed_at: datetime | None
    completed_at: datetime | None


def _to_response(job: FailedJob) -> FailedJobResponse:
    return FailedJobResponse(
        id=job.id,
        job_type=job.job_type,
        event_id=job.event_id,
        status=job.status.value,
        error=job.error,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        payload=job.payload or {},
        created_at=job.created_at,
        retried_at=job.retried_at,
        resolved_at=job.resolved_at,
    )


def _raise_http(exc: FailedJobNotFoundError | FailedJobStateError) -> NoReturn:
    if isinstance(exc, FailedJobNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc


# ─── 1. רשימה וסיכום ───────────────────────────────────────────────────────

@router.get(
    "/failed-jobs",
    response_model=FailedJobListResponse,
    summary="רשימת עבודות שנכשלו",
    description="סינון אופציונלי לפי status: PENDING, RETRYING, RESOLVED, ABANDONED",
    responses={
        200: {"description": "רשימת עבודות"},
        400: {"description": "סטטוס לא תקין"},
        **_AUTH_RESPONSES,
    },
)
async def list_failed_jobs(
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> FailedJobListResponse:
    job_status = None
    if status_filter is not None:
        try:
            job_status = FailedJobStatus(status_filter.upper())
        except ValueError:
            valid = ", ".join(s.value for s in FailedJobStatus)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status '{status_filter}', expected one of: {valid}",
            )

    jobs = await FailedJobTracker(db).list_jobs(status=job_status, limit=limit)
    return FailedJobListResponse(jobs=[_to_response(job) for job in jobs], total=len(jobs))


@router.get(
    "/failed-jobs/summary",
    response_model=FailedJobSummaryResponse,
    summary="סיכום עבודות שנכשלו לפי סטטוס",
    responses={200: {"description": "ספירה לפי סטטוס"}, **_AUTH_RESPONSES},
)
async def failed_jobs_summary(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> FailedJobSummaryResponse:
    counts = await FailedJobTracker(db).summary()
    return FailedJobSummaryResponse(counts=counts, total=sum(counts.values()))


# ─── 2. עבודה בודדת ────────────────────────────────────────────────────────

@router.get(
    "/failed-jobs/{job_id}",
    response_model=FailedJobResponse,
    summary="פרטי עבודה שנכשלה",
    responses={
        200: {"description": "פרטי העבודה"},
        404: {"description": "עבודה לא נמצאה"},
        **_AUTH_RESPONSES,
    },
)
async def get_failed_job(
    job_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> FailedJobResponse:
    try:
        job = await FailedJobTracker(db).get(job_id)
    except FailedJobNotFoundError as exc:
        _raise_http(exc)
    return _to_response(job)


# ─── 3. retry ──────────────────────────────────────────────────────────────

@router.post(
    "/failed-jobs/{job_id}/retry",
    response_model=FailedJobResponse,
    summary="הרצה חוזרת של עבודה שנכשלה",
    description=(
        "מריץ שוב את ה-payload השמור. הצלחה → RESOLVED, כישלון → PENDING עם השגיאה החדשה. "
        "מותר רק מ-PENDING וכל עוד attempts < max_attempts."
    ),
    responses={
        200: {"description": "ה-replay הסתיים, הסטטוס בתשובה"},
        400: {"description": "העבודה לא במצב שמאפשר retry"},
        404: {"description": "עבודה לא נמצאה"},
        **_AUTH_RESPONSES,
    },
)
async def retry_failed_job(
    job_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    reliability: ReliabilityRegistry = Depends(get_reliability),
) -> FailedJobResponse:
    logger.info("retry ידני של עבודה שנכשלה", extra_data={"job_id": job_id})
    try:
        job = await FailedJobTracker(db, reliability).retry(job_id)
    except (FailedJobNotFoundError, FailedJobStateError) as exc:
        _raise_http(exc)
    return _to_response(job)


# ─── 4. abandon ────────────────────────────────────────────────────────────

@router.post(
    "/failed-jobs/{job_id}/abandon",
    response_model=FailedJobResponse,
    summary="סגירה ידנית של עבודה שנכשלה",
    responses={
        200: {"description": "העבודה סומנה ABANDONED"},
        400: {"description": "העבודה כבר במצב סופי"},
        404: {"description": "עבודה לא נמצאה"},
        **_AUTH_RESPONSES,
    },
)
async def abandon_failed_job(
    job_id: int,
    body: AbandonRequest | None = None,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> FailedJobResponse:
    reason = body.reason if body else None
    try:
        job = await FailedJobTracker(db).abandon(job_id, reason=reason)
    except (FailedJobNotFoundError, FailedJobStateError) as exc:
        _raise_http(exc)
    return _to_response(job)


# ─── 5. רשומת ledger ───────────────────────────────────────────────────────

@router.get(
    "/processing-records/{event_id}",
    response_model=ProcessingRecordResponse,
    summary="רשומת עיבוד של אירוע",
    description="מצב ה-ledger עבור event_id: claimed / processed / failed, כולל התוצאה או השגיאה",
    responses={
        200: {"description": "רשומת העיבוד"},
        404: {"description": "האירוע לא נרשם"},
        **_AUTH_RESPONSES,
    },
)
async def get_processing_record(
    event_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> ProcessingRecordResponse:
    record = await IdempotencyLedger(db).lookup(event_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No processing record for event '{event_id}'",
        )

    return ProcessingRecordResponse(
        event_id=record.event_id,
        event_type=record.event_type,
        status=record.status.value,
        result=record.result,
        error=record.error,
        attempt_count=record.attempt_count,
        claimed_at=record.claimed_at,
        completed_at=record.completed_at,
    )
