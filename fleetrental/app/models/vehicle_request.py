"""
Vehicle Request database model.

The Request Ledger record linking driver, vehicle, location, date range and
payment. Rows are never deleted; expiry is recorded in ``disabled_at``.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum, Index
from sqlalchemy.sql import func
from fleetrental.app.db.session import Base
from fleetrental.app.models.enums import VehicleType, RequestType, RequestStatus


class VehicleRequest(Base):
    """
    Vehicle Request model.
    
    A PRIMARY request is the main rental for a date range. A SPARE request
    points at the PRIMARY it temporarily replaces and ends with it.
    """
    __tablename__ = "vehicle_requests"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    
    # References
    driver_id = Column(Integer, ForeignKey('drivers.id'), nullable=False, index=True)
    location_id = Column(Integer, ForeignKey('locations.id'), nullable=True, index=True)
    vehicle_id = Column(Integer, ForeignKey('vehicles.id'), nullable=True, index=True)
    payment_id = Column(Integer, ForeignKey('payments.id'), nullable=True)
    primary_request_id = Column(Integer, ForeignKey('vehicle_requests.id'), nullable=True)
    
    # What was asked for
    vehicle_type = Column(Enum(VehicleType), nullable=False)
    request_type = Column(Enum(RequestType), nullable=False, index=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    
    # Lifecycle
    status = Column(Enum(RequestStatus), default=RequestStatus.PENDING, nullable=False, index=True)
    rejected_reason = Column(String(255), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    disabled_at = Column(DateTime, nullable=True)
    
    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    
    __table_args__ = (
        Index('ix_vehicle_requests_driver_type_status', 'driver_id', 'request_type', 'status'),
    )
    
    def __repr__(self):
        return f"<VehicleRequest(id={self.id}, driver_id={self.driver_id}, type='{self.request_type.value}', status='{self.status.value}')>"
