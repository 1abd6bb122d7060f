"""
Domain Services
"""
from fulfillment.domain.services.outbox_service import OutboxService
from fulfillment.domain.services.email_service import EmailService
from fulfillment.domain.services.idempotency_ledger import IdempotencyLedger
from fulfillment.domain.services.fulfillment_service import FulfillmentService
from fulfillment.domain.services.failed_job_service import FailedJobTracker
from fulfillment.domain.services.webhook_processor import WebhookProcessor

__all__ = [
    "OutboxService",
    "EmailService",
    "IdempotencyLedger",
    "FulfillmentService",
    "FailedJobTracker",
    "WebhookProcessor",
]
