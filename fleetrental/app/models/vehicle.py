"""
Vehicle database model.

The Vehicle Registry record: identity, type, price, location and the two
orthogonal state fields (operational status and device action).
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from fleetrental.app.db.session import Base
from fleetrental.app.models.enums import VehicleType, VehicleStatus, VehicleAction, DEFAULT_RENTAL_VALUE


class Vehicle(Base):
    """
    Vehicle model.
    
    ``status`` is only ever changed through conditional updates
    (see services.vehicle_registry.transition_status).
    """
    __tablename__ = "vehicles"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    
    # Identification
    vehicle_number = Column(String(100), unique=True, nullable=False, index=True)
    vehicle_type = Column(Enum(VehicleType), nullable=False, index=True)
    
    # Commercials and placement
    rental_value = Column(Float, default=DEFAULT_RENTAL_VALUE, nullable=False)
    location_id = Column(Integer, ForeignKey('locations.id'), nullable=True, index=True)
    
    # State
    status = Column(Enum(VehicleStatus), default=VehicleStatus.INACTIVE, nullable=False, index=True)
    action = Column(Enum(VehicleAction), default=VehicleAction.ENABLE, nullable=False)
    disabled_at = Column(DateTime, nullable=True)
    
    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<Vehicle(id={self.id}, number='{self.vehicle_number}', status='{self.status.value}')>"
