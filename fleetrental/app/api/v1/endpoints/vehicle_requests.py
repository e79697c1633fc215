"""
Vehicle Request API Endpoints.

Driver-facing request creation and the operator's allocation decisions.
"""

from typing import Optional
from fastapi import APIRouter, Depends, status, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession

from fleetrental.app.db.session import get_db
from fleetrental.app.core.dependencies import get_engine, get_actor
from fleetrental.app.models.enums import RequestType, RequestStatus
from fleetrental.app.schemas.vehicle_request import (
    PrimaryRequestCreate,
    SpareRequestCreate,
    AllocateVehicle,
    AllocateSpareVehicle,
    RejectRequest,
    VehicleRequestResponse,
    VehicleRequestListResponse,
    DeactivationResponse
)
from fleetrental.app.services import request_ledger
from fleetrental.app.services.allocation import AllocationEngine

router = APIRouter(prefix="/vehicle-requests", tags=["Vehicle Requests"])


@router.post("", response_model=VehicleRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_primary_request(
    request_data: PrimaryRequestCreate,
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Ask for a rental vehicle.

    Returns 409 when the driver already has an open request.
    """
    vehicle_request = await engine.create_primary_request(
        db,
        driver_id=request_data.driver_id,
        vehicle_type=request_data.vehicle_type,
        start_date=request_data.start_date,
        end_date=request_data.end_date,
        location_id=request_data.location_id,
        actor=actor
    )
    return VehicleRequestResponse.model_validate(vehicle_request)


@router.post("/spare", response_model=VehicleRequestResponse, status_code=status.HTTP_201_CREATED)
async def request_spare_vehicle(
    request_data: SpareRequestCreate,
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """Ask for a replacement while the rented vehicle is broken."""
    spare = await engine.request_spare_vehicle(db, request_data.driver_id, actor=actor)
    return VehicleRequestResponse.model_validate(spare)


@router.get("", response_model=VehicleRequestListResponse)
async def list_requests(
    request_status: Optional[RequestStatus] = Query(None, alias="status", description="Filter by status"),
    request_type: Optional[RequestType] = Query(None, description="Filter by PRIMARY/SPARE"),
    driver_id: Optional[int] = Query(None),
    location_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=100, description="Items per page"),
    db: AsyncSession = Depends(get_db)
):
    requests, total = await request_ledger.list_requests(
        db,
        status=request_status,
        request_type=request_type,
        driver_id=driver_id,
        location_id=location_id,
        page=page,
        page_size=page_size
    )
    return VehicleRequestListResponse(
        requests=[VehicleRequestResponse.model_validate(r) for r in requests],
        total=total,
        page=page,
        page_size=page_size
    )


@router.get("/{request_id}", response_model=VehicleRequestResponse)
async def get_request(
    request_id: int = Path(..., description="Vehicle request ID"),
    db: AsyncSession = Depends(get_db)
):
    vehicle_request = await request_ledger.get_request(db, request_id)
    return VehicleRequestResponse.model_validate(vehicle_request)


@router.post("/{request_id}/approve", response_model=VehicleRequestResponse)
async def approve_request(
    request_id: int = Path(..., description="Vehicle request ID"),
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    vehicle_request = await engine.approve_request(db, request_id, actor=actor)
    return VehicleRequestResponse.model_validate(vehicle_request)


@router.post("/{request_id}/reject", response_model=VehicleRequestResponse)
async def reject_request(
    rejection: RejectRequest,
    request_id: int = Path(..., description="Vehicle request ID"),
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    vehicle_request = await engine.reject_request(db, request_id, reason=rejection.reason, actor=actor)
    return VehicleRequestResponse.model_validate(vehicle_request)


@router.post("/{request_id}/allocate", response_model=VehicleRequestResponse)
async def allocate_vehicle(
    allocation: AllocateVehicle,
    request_id: int = Path(..., description="Vehicle request ID"),
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Allocate an INACTIVE vehicle to a PRIMARY request.

    Returns 409 ``ERR_VEHICLE_UNAVAILABLE`` when the vehicle was taken;
    the request stays waiting and another vehicle can be chosen.
    """
    vehicle_request = await engine.allocate_vehicle(db, request_id, allocation.vehicle_id, actor=actor)
    return VehicleRequestResponse.model_validate(vehicle_request)


@router.post("/{request_id}/allocate-spare", response_model=VehicleRequestResponse)
async def allocate_spare_vehicle(
    allocation: AllocateSpareVehicle,
    request_id: int = Path(..., description="Spare request ID"),
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    vehicle_request = await engine.allocate_spare_vehicle(
        db, request_id, allocation.spare_vehicle_id, actor=actor
    )
    return VehicleRequestResponse.model_validate(vehicle_request)


@router.post("/{request_id}/disable", response_model=DeactivationResponse)
async def disable_vehicle(
    request_id: int = Path(..., description="Vehicle request ID"),
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Disable the request's vehicle now. Safe to repeat; the scheduled job
    for this request becomes a no-op.
    """
    outcome = await engine.disable_vehicle(db, request_id, actor=actor)
    return DeactivationResponse(**outcome.as_dict())
