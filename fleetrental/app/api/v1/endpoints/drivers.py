"""
Driver API Endpoints.

Request status polling for the driver app and the operator's
activate/deactivate switch.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from fleetrental.app.db.session import get_db
from fleetrental.app.core.dependencies import get_engine, get_actor
from fleetrental.app.schemas.ops import DriverStatusUpdate, DriverResponse
from fleetrental.app.schemas.vehicle_request import RequestStatusResponse, VehicleRequestResponse
from fleetrental.app.services.allocation import AllocationEngine

router = APIRouter(prefix="/drivers", tags=["Drivers"])


@router.get("/{driver_id}/request-status", response_model=RequestStatusResponse)
async def get_request_status(
    driver_id: int = Path(..., description="Driver ID"),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """Latest PRIMARY and SPARE request of the driver."""
    status_data = await engine.get_request_status(db, driver_id)
    return RequestStatusResponse(
        driver_id=driver_id,
        primary=VehicleRequestResponse.model_validate(status_data["primary"]) if status_data["primary"] else None,
        spare=VehicleRequestResponse.model_validate(status_data["spare"]) if status_data["spare"] else None
    )


@router.patch("/{driver_id}/status", response_model=DriverResponse)
async def set_driver_status(
    update_data: DriverStatusUpdate,
    driver_id: int = Path(..., description="Driver ID"),
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """Inactive drivers cannot create requests."""
    driver = await engine.set_driver_active(db, driver_id, update_data.is_active, actor=actor)
    return DriverResponse.model_validate(driver)
