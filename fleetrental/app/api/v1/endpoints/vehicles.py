"""
Vehicle Registry API Endpoints.

Operator CRUD over the fleet plus the admin re-enable command.
"""

from typing import Optional
from fastapi import APIRouter, Depends, status, Query, Path, Response
from sqlalchemy.ext.asyncio import AsyncSession

from fleetrental.app.db.session import get_db
from fleetrental.app.core.dependencies import get_engine, get_actor
from fleetrental.app.models.enums import VehicleType, VehicleStatus
from fleetrental.app.schemas.vehicle import (
    VehicleCreate, VehicleUpdate, VehicleResponse, VehicleListResponse
)
from fleetrental.app.services import vehicle_registry
from fleetrental.app.services.allocation import AllocationEngine
from fleetrental.app.services.audit import record_event, AuditAction

router = APIRouter(prefix="/vehicles", tags=["Vehicles"])


@router.post("", response_model=VehicleResponse, status_code=status.HTTP_201_CREATED)
async def create_vehicle(
    vehicle_data: VehicleCreate,
    actor: Optional[str] = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
):
    """
    Register a vehicle. New vehicles start INACTIVE with the device enabled.
    """
    try:
        vehicle = await vehicle_registry.create_vehicle(
            db,
            vehicle_number=vehicle_data.vehicle_number,
            vehicle_type=vehicle_data.vehicle_type,
            rental_value=vehicle_data.rental_value,
            location_id=vehicle_data.location_id
        )
        record_event(
            db,
            AuditAction.VEHICLE_CREATED,
            actor=actor,
            vehicle_id=vehicle.id,
            metadata={"vehicle_number": vehicle.vehicle_number, "vehicle_type": vehicle.vehicle_type.value}
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(vehicle)
    return VehicleResponse.model_validate(vehicle)


@router.get("", response_model=VehicleListResponse)
async def list_vehicles(
    vehicle_status: Optional[VehicleStatus] = Query(None, alias="status", description="Filter by status"),
    vehicle_type: Optional[VehicleType] = Query(None, description="Filter by vehicle type"),
    location_id: Optional[int] = Query(None, description="Filter by location"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=100, description="Items per page"),
    db: AsyncSession = Depends(get_db)
):
    vehicles, total = await vehicle_registry.list_vehicles(
        db, status=vehicle_status, vehicle_type=vehicle_type, location_id=location_id,
        page=page, page_size=page_size
    )
    return VehicleListResponse(
        vehicles=[VehicleResponse.model_validate(v) for v in vehicles],
        total=total,
        page=page,
        page_size=page_size
    )


@router.get("/inactive", response_model=VehicleListResponse)
async def list_inactive_vehicles(
    vehicle_type: Optional[VehicleType] = Query(None, description="Filter by vehicle type"),
    location_id: Optional[int] = Query(None, description="Filter by location"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    """Vehicles that can be allocated right now."""
    vehicles, total = await vehicle_registry.list_vehicles(
        db, status=VehicleStatus.INACTIVE, vehicle_type=vehicle_type, location_id=location_id,
        page=page, page_size=page_size
    )
    return VehicleListResponse(
        vehicles=[VehicleResponse.model_validate(v) for v in vehicles],
        total=total,
        page=page,
        page_size=page_size
    )


@router.get("/{vehicle_id}", response_model=VehicleResponse)
async def get_vehicle(
    vehicle_id: int = Path(..., description="Vehicle ID"),
    db: AsyncSession = Depends(get_db)
):
    vehicle = await vehicle_registry.get_vehicle(db, vehicle_id)
    return VehicleResponse.model_validate(vehicle)


@router.patch("/{vehicle_id}", response_model=VehicleResponse)
async def update_vehicle(
    vehicle_data: VehicleUpdate,
    vehicle_id: int = Path(..., description="Vehicle ID"),
    actor: Optional[str] = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
):
    """Edit type, price or location. Status changes only through allocation."""
    changes = vehicle_data.model_dump(exclude_unset=True)
    try:
        vehicle = await vehicle_registry.update_vehicle(db, vehicle_id, **changes)
        record_event(
            db,
            AuditAction.VEHICLE_UPDATED,
            actor=actor,
            vehicle_id=vehicle_id,
            metadata={key: getattr(value, "value", value) for key, value in changes.items()}
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(vehicle)
    return VehicleResponse.model_validate(vehicle)


@router.delete("/{vehicle_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_vehicle(
    vehicle_id: int = Path(..., description="Vehicle ID"),
    actor: Optional[str] = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
):
    """Delete an INACTIVE vehicle without rental history."""
    try:
        vehicle = await vehicle_registry.delete_vehicle(db, vehicle_id)
        record_event(
            db,
            AuditAction.VEHICLE_DELETED,
            actor=actor,
            vehicle_id=vehicle_id,
            metadata={"vehicle_number": vehicle.vehicle_number}
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{vehicle_id}/enable", response_model=VehicleResponse)
async def enable_vehicle(
    vehicle_id: int = Path(..., description="Vehicle ID"),
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """Mobilise a disabled vehicle's device."""
    vehicle = await engine.enable_vehicle(db, vehicle_id, actor=actor)
    return VehicleResponse.model_validate(vehicle)
