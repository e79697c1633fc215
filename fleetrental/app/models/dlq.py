"""
Dead-letter queue for device commands.

A command lands here when the telematics API rejects it or cannot be
reached. The vehicle's status transition has already committed; only the
device side is behind. The recovery sweep and the admin retry endpoint
re-send from this table.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum
from sqlalchemy.sql import func
from fleetrental.app.db.session import Base
import enum


class DLQStatus(str, enum.Enum):
    FAILED = "FAILED"  # Waiting for the next retry
    RETRYING = "RETRYING"  # Resend in flight; picked up again if the worker died
    PROCESSED = "PROCESSED"  # Delivered on retry
    ARCHIVED = "ARCHIVED"  # Retries exhausted or superseded by a newer intent


class DeadLetterQueue(Base):
    __tablename__ = "dead_letter_queue"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    task_name = Column(String(100), nullable=False, index=True)
    vehicle_number = Column(String(50), nullable=True, index=True)
    error_message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)  # {"vehicle_number", "intent"}

    status = Column(Enum(DLQStatus), default=DLQStatus.FAILED, nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_retry_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<DeadLetter(id={self.id}, vehicle='{self.vehicle_number}', status='{self.status}')>"
