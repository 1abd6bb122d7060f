"""
API Routes
"""
from fastapi import APIRouter

from fulfillment.api.routes.admin_failed_jobs import router as admin_failed_jobs_router
from fulfillment.api.routes.admin_reliability import router as admin_reliability_router
from fulfillment.api.webhooks.payments import router as payments_webhook_router

router = APIRouter()

router.include_router(payments_webhook_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(
    admin_reliability_router,
    prefix="/admin/reliability",
    tags=["Admin Reliability"],
)
router.include_router(admin_failed_jobs_router, prefix="/admin", tags=["Admin Failed Jobs"])
