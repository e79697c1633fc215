"""
Scheduled Job database model.

Durable backing store of the deactivation scheduler. In-memory timers are
re-armed from this table when the process starts.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum
from sqlalchemy.sql import func
from fleetrental.app.db.session import Base
import enum


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ScheduledJob(Base):
    """
    One time-keyed job.
    ``key`` is unique so rescheduling the same work replaces the old row.
    """
    __tablename__ = "scheduled_jobs"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    
    key = Column(String(150), unique=True, nullable=False, index=True)
    callback = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=True)
    fire_at = Column(DateTime, nullable=False, index=True)
    
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    fired_at = Column(DateTime, nullable=True)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<ScheduledJob(key='{self.key}', fire_at={self.fire_at}, status='{self.status}')>"
