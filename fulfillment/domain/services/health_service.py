"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Celery broker).

- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקת התלויות החיצוניות
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from fulfillment.core.config import settings
from fulfillment.core.logging import get_logger
from fulfillment.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    """בדיקת חיבור למסד הנתונים באמצעות שאילתה קלה."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_celery() -> str:
    """ping ל-broker של Celery (Redis) - בלעדיו מיילים מה-outbox לא נשלחים."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("בדיקת בריאות Celery נכשלה", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness() -> dict[str, Any]:
    """
    מחזיר dict עם סטטוס כללי ופירוט לכל תלות:
    - status: "healthy" אם הכל תקין, "degraded" אחרת
    - db / celery: "ok" או "error: ..."
    """
    checks = {
        "db": await _check_db(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning(
            "בדיקת מוכנות - המערכת במצב degraded",
            extra_data=checks,
        )

    return {"status": overall_status, **checks}
