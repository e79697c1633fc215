"""
Audit Log Database Model.

Allocation history kept for payment and audit reporting.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from fleetrental.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model for engine mutations.
    
    Events logged:
    - REQUEST_CREATED / REQUEST_APPROVED / REQUEST_REJECTED
    - VEHICLE_ALLOCATED / SPARE_ALLOCATED
    - VEHICLE_DEACTIVATED / VEHICLE_ENABLED
    - PAYMENT_ATTACHED
    """
    __tablename__ = "audit_logs"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    
    # Who performed the action (None for scheduler actions)
    actor = Column(String(100), nullable=True)
    
    # What action was performed
    action = Column(String(100), nullable=False, index=True)
    
    # Affected records
    driver_id = Column(Integer, index=True, nullable=True)
    vehicle_id = Column(Integer, index=True, nullable=True)
    request_id = Column(Integer, index=True, nullable=True)
    
    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)
    
    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    
    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', request_id={self.request_id})>"
