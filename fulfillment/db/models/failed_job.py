"""
Failed Job Model - dead letter לאירועים שנכשלו אחרי כל ה-retries.

ה-payload נשמר בדיוק כפי שהתקבל כדי שמפעיל יוכל להריץ אותו שוב.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum as SQLEnum, JSON, Index

from fulfillment.db.database import Base


class FailedJobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    RESOLVED = "RESOLVED"
    ABANDONED = "ABANDONED"


TERMINAL_FAILED_JOB_STATUSES = frozenset({FailedJobStatus.RESOLVED, FailedJobStatus.ABANDONED})


class FailedJob(Base):
    __tablename__ = "failed_jobs"

    id = Column(Integer, primary_key=True, index=True)
    job_type = Column(String(100), nullable=False)
    event_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    error = Column(Text, nullable=False)

    status = Column(SQLEnum(FailedJobStatus), nullable=False, default=FailedJobStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    created_at = Column(DateTime, default=datetime.utcnow)
    retried_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_failed_jobs_status_created", "status", "created_at"),
    )
