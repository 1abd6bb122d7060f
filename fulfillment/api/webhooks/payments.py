"""
Payment provider webhook - נקודת הכניסה של אירועי התשלום.

אימות חתימה → חילוץ האירוע → WebhookProcessor → מיפוי התוצאה לסטטוס HTTP:
- חתימה חסרה/שגויה או JSON פגום: 400, בלי עיבוד
- secret לא מוגדר: 500 (תקלת תצורה, הספק ינסה שוב)
- processed / already_processed: 200
- error: 500 כדי שהספק ישלח שוב; פרטי השגיאה לא נחשפים
"""
import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.api.dependencies.reliability import get_reliability
from fulfillment.core.config import settings
from fulfillment.core.exceptions import WebhookSignatureError
from fulfillment.core.logging import get_logger
from fulfillment.core.reliability import ReliabilityRegistry
from fulfillment.core.signature import SIGNATURE_HEADER, verify_signature
from fulfillment.db.database import get_db
from fulfillment.domain.events import PaymentEvent
from fulfillment.domain.services.webhook_processor import WebhookProcessor

logger = get_logger(__name__)

router = APIRouter()


class WebhookAck(BaseModel):
    received: bool
    status: str


@router.post(
    "/payments",
    response_model=WebhookAck,
    summary="Payment provider webhook",
    responses={
        400: {"description": "Missing or invalid signature, or malformed payload"},
        500: {"description": "Processing failed or webhook secret not configured"},
    },
)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reliability: ReliabilityRegistry = Depends(get_reliability),
):
    if not settings.PAYMENT_WEBHOOK_SECRET:
        logger.error("Payment webhook rejected, PAYMENT_WEBHOOK_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook not configured",
        )

    body = await request.body()

    try:
        verify_signature(
            body,
            request.headers.get(SIGNATURE_HEADER),
            settings.PAYMENT_WEBHOOK_SECRET,
            tolerance_seconds=settings.WEBHOOK_SIGNATURE_TOLERANCE_SECONDS,
        )
    except WebhookSignatureError as exc:
        logger.warning(
            "Payment webhook signature rejected",
            extra_data={"reason": exc.details.get("reason")},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        event = PaymentEvent.model_validate(json.loads(body))
    except (ValueError, ValidationError):
        logger.warning("Payment webhook payload rejected", extra_data={"size": len(body)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    logger.info(
        "Payment webhook received",
        extra_data={"event_id": event.id, "event_type": event.type},
    )

    result = await WebhookProcessor(db, reliability).process(event)

    if result.ok:
        return WebhookAck(received=True, status=result.status)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"received": False, "status": result.status, "detail": "Processing failed"},
    )
