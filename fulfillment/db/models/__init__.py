"""
Database Models
"""
from fulfillment.db.models.processing_record import ProcessingRecord
from fulfillment.db.models.order import Order, OrderItem
from fulfillment.db.models.entitlement import Entitlement
from fulfillment.db.models.failed_job import FailedJob
from fulfillment.db.models.outbox_message import OutboxMessage
from fulfillment.db.models.email_log import EmailLog
from fulfillment.db.models.audit_log import AuditLog

__all__ = [
    "ProcessingRecord",
    "Order",
    "OrderItem",
    "Entitlement",
    "FailedJob",
    "OutboxMessage",
    "EmailLog",
    "AuditLog",
]
