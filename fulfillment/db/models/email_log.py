"""
Email Log Model - רישום של כל ניסיון שליחה לספק המייל
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum as SQLEnum

from fulfillment.db.database import Base


class EmailLogStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, index=True)
    recipient = Column(String(255), nullable=False, index=True)
    subject = Column(String(255), nullable=False)
    status = Column(SQLEnum(EmailLogStatus), nullable=False)
    provider = Column(String(50), nullable=False, default="resend")
    provider_message_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
