"""
Vehicle Pydantic schemas.

Defines request and response models for the vehicle registry.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List

from fleetrental.app.models.enums import VehicleType, VehicleStatus, VehicleAction


class VehicleCreate(BaseModel):
    """Schema for registering a new vehicle."""
    vehicle_number: str = Field(..., min_length=1, max_length=50, description="Unique registration number, also the device id")
    vehicle_type: VehicleType = Field(..., description="Vehicle class")
    rental_value: Optional[float] = Field(None, gt=0, description="Rental price per period (defaults to 600)")
    location_id: Optional[int] = Field(None, description="Hub the vehicle is parked at")


class VehicleUpdate(BaseModel):
    """Schema for editing descriptive vehicle fields. Status is not editable."""
    vehicle_type: Optional[VehicleType] = None
    rental_value: Optional[float] = Field(None, gt=0)
    location_id: Optional[int] = None


class VehicleResponse(BaseModel):
    """Schema for vehicle response."""
    id: int
    vehicle_number: str
    vehicle_type: VehicleType
    rental_value: float
    location_id: Optional[int]
    status: VehicleStatus
    action: VehicleAction
    disabled_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class VehicleListResponse(BaseModel):
    """Schema for paginated vehicle list."""
    vehicles: List[VehicleResponse]
    total: int
    page: int
    page_size: int
