"""
Webhook Fulfillment - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from fulfillment.core.config import settings
from fulfillment.core.logging import setup_logging, get_logger
from fulfillment.core.middleware import setup_middleware, setup_exception_handlers
from fulfillment.core.reliability import build_reliability_registry
from fulfillment.api.routes import router as api_router
from fulfillment.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "קבלת אירועי תשלום חתומים מספק התשלומים."},
    {
        "name": "Admin Reliability",
        "description": "מצב circuit breakers, bulkheads ו-feature flags, כולל איפוס והחלפה בזמן ריצה.",
    },
    {
        "name": "Admin Failed Jobs",
        "description": "עבודות שנכשלו: צפייה, retry, abandon ורשומות ה-ledger.",
    },
]


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    description=(
        "מנוע fulfillment אידמפוטנטי לאירועי webhook של ספק תשלומים: "
        "הענקה ושלילה של הרשאות, מיילים דרך outbox ומעקב אחר כשלים."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# circuit breakers / bulkheads / feature flags של תהליך ה-API
app.state.reliability = build_reliability_registry(settings)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description="בדיקה קלה שהתהליך חי ומגיב. לא בודק תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe - התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת התלויות: DB ו-Celery broker. "
        "מחזיר status=healthy אם הכל תקין, או status=degraded עם פירוט השגיאה."
    ),
    responses={
        200: {
            "description": "כל התלויות תקינות",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "celery": "ok"}
                }
            },
        },
        503: {
            "description": "לפחות תלות אחת לא זמינה",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "celery": "error: celery_unavailable",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe - בדיקת התלויות החיצוניות."""
    from fulfillment.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
