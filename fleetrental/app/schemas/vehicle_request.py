"""
Vehicle Request Pydantic schemas.

Request datetimes are stored as naive UTC; timezone-aware input is
converted on the way in.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from typing import Optional, List

from fleetrental.app.models.enums import VehicleType, RequestType, RequestStatus


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class PrimaryRequestCreate(BaseModel):
    """Schema for a driver asking for a rental."""
    driver_id: int = Field(..., description="Requesting driver")
    vehicle_type: VehicleType = Field(..., description="Requested vehicle class")
    start_date: datetime = Field(..., description="Rental start")
    end_date: datetime = Field(..., description="Rental end; the vehicle is disabled at this time")
    location_id: Optional[int] = Field(None, description="Pickup hub (defaults to the driver's hub)")

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_datetime(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class SpareRequestCreate(BaseModel):
    """Schema for a driver asking for a replacement vehicle."""
    driver_id: int


class AllocateVehicle(BaseModel):
    vehicle_id: int = Field(..., description="INACTIVE vehicle to allocate")


class AllocateSpareVehicle(BaseModel):
    spare_vehicle_id: int = Field(..., description="INACTIVE vehicle to hand out as spare")


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class VehicleRequestResponse(BaseModel):
    """Schema for vehicle request response."""
    id: int
    driver_id: int
    location_id: Optional[int]
    vehicle_id: Optional[int]
    payment_id: Optional[int]
    primary_request_id: Optional[int]
    vehicle_type: VehicleType
    request_type: RequestType
    start_date: datetime
    end_date: datetime
    status: RequestStatus
    rejected_reason: Optional[str]
    processed_at: Optional[datetime]
    disabled_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class VehicleRequestListResponse(BaseModel):
    """Schema for paginated request list."""
    requests: List[VehicleRequestResponse]
    total: int
    page: int
    page_size: int


class RequestStatusResponse(BaseModel):
    """Latest PRIMARY and SPARE request of a driver."""
    driver_id: int
    primary: Optional[VehicleRequestResponse] = None
    spare: Optional[VehicleRequestResponse] = None


class DeactivationResponse(BaseModel):
    """Result of the disable routine, including cascaded spares."""
    request_id: int
    vehicle_id: Optional[int]
    request_disabled: bool
    vehicle_deactivated: bool
    device_command_sent: bool
    cascaded: List["DeactivationResponse"] = []
