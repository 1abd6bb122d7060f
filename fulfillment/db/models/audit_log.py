"""
Audit Log Model - לוג ביקורת

רישום בלתי-הפיך של "מי עשה מה": החזרים כספיים שבוטלו בהם הרשאות, ופעולות
מפעיל (retry / abandon) על עבודות שנכשלו.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, DateTime, String, Enum as SQLEnum
from sqlalchemy.types import JSON

from fulfillment.db.database import Base


class AuditActionType(str, enum.Enum):
    REFUND_PROCESSED = "refund_processed"
    FAILED_JOB_RETRIED = "failed_job_retried"
    FAILED_JOB_ABANDONED = "failed_job_abandoned"


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(SQLEnum(AuditActionType), nullable=False, index=True)
    actor = Column(String(100), nullable=False, default="admin")
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    # פרטי הפעולה בפורמט JSON - "מה שונה מ-X ל-Y"
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
