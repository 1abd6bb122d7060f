"""
Processing Record Model - ה-ledger של אירועי ספק התשלומים.

רשומה אחת לכל event_id. המפתח הראשי הוא מה שמבטיח שרק מעבד אחד יזכה
ב-claim, גם כשאותו אירוע מגיע כמה פעמים במקביל. רשומות לא נמחקות.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, Enum as SQLEnum, JSON, Index

from fulfillment.db.database import Base


class ProcessingStatus(str, enum.Enum):
    CLAIMED = "claimed"
    PROCESSED = "processed"
    FAILED = "failed"


class ProcessingRecord(Base):
    """Outcome of one external event id"""

    __tablename__ = "processing_records"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    status = Column(SQLEnum(ProcessingStatus), nullable=False, default=ProcessingStatus.CLAIMED)
    result = Column(JSON, nullable=True)
    # האירוע כפי שהתקבל - ה-sweeper יוצר ממנו failed job כש-claim נתקע
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    # מונה מסירות - עולה בכל פעם שמסירה כפולה פוגשת רשומה קיימת
    attempt_count = Column(Integer, nullable=False, default=1)
    claimed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_processing_records_status_claimed", "status", "claimed_at"),
    )
