"""
Driver database model.

Drivers are owned by user management. The engine reads them and writes
only the active flag and the lock counter.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func
from fleetrental.app.db.session import Base


class Driver(Base):
    """
    Driver model.
    
    ``lock_version`` is bumped by a conditional update at the start of every
    request-creating transaction, which serialises concurrent requests of
    the same driver on the driver row.
    """
    __tablename__ = "drivers"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(150), nullable=False)
    phone = Column(String(20), unique=True, nullable=False, index=True)
    location_id = Column(Integer, ForeignKey('locations.id'), nullable=True, index=True)
    
    is_active = Column(Boolean, default=True, nullable=False)
    lock_version = Column(Integer, default=0, nullable=False)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<Driver(id={self.id}, phone='{self.phone}', active={self.is_active})>"
