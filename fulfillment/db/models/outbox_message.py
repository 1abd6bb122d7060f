"""
Outbox Message Model - Transactional Outbox Pattern

מיילים נכתבים כאן באותה טרנזקציה שמעדכנת את ההזמנה, ונשלחים מאוחר יותר
על ידי ה-worker. כך כשל בשליחה לעולם לא מבטל fulfillment.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum as SQLEnum, ForeignKey

from fulfillment.db.database import Base


class EmailMessageType(str, enum.Enum):
    PURCHASE_CONFIRMATION = "purchase_confirmation"
    REFUND_NOTIFICATION = "refund_notification"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """Queued email with retry tracking"""

    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)

    message_type = Column(SQLEnum(EmailMessageType), nullable=False)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    html = Column(Text, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)

    status = Column(SQLEnum(MessageStatus), default=MessageStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=5)

    provider_message_id = Column(String(255), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    # Error tracking
    last_error = Column(String(1000), nullable=True)
