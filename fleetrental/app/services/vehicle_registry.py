"""
Vehicle Registry service.

Owns vehicle identity and the two state fields. Status and action are only
changed through conditional updates so concurrent callers can never
overwrite each other's transition.
"""

from datetime import datetime
from typing import Iterable, Optional, Tuple, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func

from fleetrental.app.core.exceptions import NotFoundError, ConflictError
from fleetrental.app.models.vehicle import Vehicle
from fleetrental.app.models.location import Location
from fleetrental.app.models.vehicle_request import VehicleRequest
from fleetrental.app.models.enums import (
    VehicleType, VehicleStatus, VehicleAction, RequestStatus,
    DEFAULT_RENTAL_VALUE
)


async def create_vehicle(
    db: AsyncSession,
    vehicle_number: str,
    vehicle_type: VehicleType,
    rental_value: Optional[float] = None,
    location_id: Optional[int] = None
) -> Vehicle:
    """
    Register a new vehicle in INACTIVE/ENABLE state.

    Raises:
        ConflictError: If a vehicle with the same number exists
        NotFoundError: If the location does not exist
    """
    existing = await db.execute(
        select(Vehicle.id).where(Vehicle.vehicle_number == vehicle_number)
    )
    if existing.scalar_one_or_none() is not None:
        raise ConflictError(
            "Vehicle with this number already exists",
            details={"vehicle_number": vehicle_number}
        )

    if location_id is not None:
        await ensure_location(db, location_id)

    vehicle = Vehicle(
        vehicle_number=vehicle_number,
        vehicle_type=vehicle_type,
        rental_value=rental_value if rental_value is not None else DEFAULT_RENTAL_VALUE,
        location_id=location_id,
        status=VehicleStatus.INACTIVE,
        action=VehicleAction.ENABLE
    )
    db.add(vehicle)
    await db.flush()
    return vehicle


async def ensure_location(db: AsyncSession, location_id: int) -> Location:
    result = await db.execute(select(Location).where(Location.id == location_id))
    location = result.scalar_one_or_none()
    if not location:
        raise NotFoundError("Location", location_id)
    return location


async def get_vehicle(db: AsyncSession, vehicle_id: int) -> Vehicle:
    """
    Load a vehicle by id.

    Raises:
        NotFoundError: If the vehicle does not exist
    """
    result = await db.execute(
        select(Vehicle)
        .where(Vehicle.id == vehicle_id)
        .execution_options(populate_existing=True)
    )
    vehicle = result.scalar_one_or_none()
    if not vehicle:
        raise NotFoundError("Vehicle", vehicle_id)
    return vehicle


async def get_vehicle_by_number(db: AsyncSession, vehicle_number: str) -> Vehicle:
    result = await db.execute(
        select(Vehicle)
        .where(Vehicle.vehicle_number == vehicle_number)
        .execution_options(populate_existing=True)
    )
    vehicle = result.scalar_one_or_none()
    if not vehicle:
        raise NotFoundError("Vehicle", vehicle_number, message=f"Vehicle {vehicle_number} not found")
    return vehicle


async def list_vehicles(
    db: AsyncSession,
    status: Optional[VehicleStatus] = None,
    vehicle_type: Optional[VehicleType] = None,
    location_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 50
) -> Tuple[List[Vehicle], int]:
    """
    List vehicles with optional filters.

    Returns:
        (vehicles for the requested page, total matching count)
    """
    query = select(Vehicle)
    count_query = select(func.count(Vehicle.id))

    if status is not None:
        query = query.where(Vehicle.status == status)
        count_query = count_query.where(Vehicle.status == status)
    if vehicle_type is not None:
        query = query.where(Vehicle.vehicle_type == vehicle_type)
        count_query = count_query.where(Vehicle.vehicle_type == vehicle_type)
    if location_id is not None:
        query = query.where(Vehicle.location_id == location_id)
        count_query = count_query.where(Vehicle.location_id == location_id)

    total = (await db.execute(count_query)).scalar()

    offset = (page - 1) * page_size
    result = await db.execute(query.order_by(Vehicle.id).offset(offset).limit(page_size))
    return result.scalars().all(), total


async def update_vehicle(
    db: AsyncSession,
    vehicle_id: int,
    vehicle_type: Optional[VehicleType] = None,
    rental_value: Optional[float] = None,
    location_id: Optional[int] = None
) -> Vehicle:
    """
    Edit descriptive fields. Status and action are never touched here.
    """
    vehicle = await get_vehicle(db, vehicle_id)

    values = {}
    if vehicle_type is not None:
        values["vehicle_type"] = vehicle_type
    if rental_value is not None:
        values["rental_value"] = rental_value
    if location_id is not None:
        await ensure_location(db, location_id)
        values["location_id"] = location_id

    if values:
        await db.execute(
            update(Vehicle)
            .where(Vehicle.id == vehicle_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(vehicle)
    return vehicle


async def delete_vehicle(db: AsyncSession, vehicle_id: int) -> Vehicle:
    """
    Remove a vehicle that no request has ever referenced.

    Raises:
        NotFoundError: If the vehicle does not exist
        ConflictError: If the vehicle is in service or has rental history
    """
    vehicle = await get_vehicle(db, vehicle_id)

    open_refs = await db.execute(
        select(func.count(VehicleRequest.id)).where(
            VehicleRequest.vehicle_id == vehicle_id,
            VehicleRequest.status == RequestStatus.PROCESSED,
            VehicleRequest.disabled_at.is_(None)
        )
    )
    if open_refs.scalar() > 0:
        raise ConflictError(
            "Vehicle has an open request and cannot be deleted",
            details={"vehicle_id": vehicle_id}
        )

    history = await db.execute(
        select(func.count(VehicleRequest.id)).where(VehicleRequest.vehicle_id == vehicle_id)
    )
    if history.scalar() > 0:
        raise ConflictError(
            "Vehicle has rental history and cannot be deleted",
            details={"vehicle_id": vehicle_id}
        )

    result = await db.execute(
        delete(Vehicle)
        .where(Vehicle.id == vehicle_id, Vehicle.status == VehicleStatus.INACTIVE)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            f"Only INACTIVE vehicles can be deleted, current status: {vehicle.status.value}",
            details={"vehicle_id": vehicle_id}
        )
    return vehicle


async def transition_status(
    db: AsyncSession,
    vehicle_id: int,
    expected: Iterable[VehicleStatus],
    new_status: VehicleStatus,
    action: Optional[VehicleAction] = None,
    now: Optional[datetime] = None
) -> bool:
    """
    Compare-and-set the operational status of a vehicle.

    Issues a single ``UPDATE ... WHERE status IN (expected)``. Moving to
    INACTIVE with ``action=DISABLE`` also stamps ``disabled_at``.

    Args:
        db: Database session (caller commits)
        vehicle_id: Vehicle to move
        expected: Statuses the vehicle must currently be in
        new_status: Target status
        action: Optional device action to set in the same statement
        now: Clock value for ``disabled_at``

    Returns:
        True if this call performed the transition, False if the
        precondition did not hold
    """
    values = {"status": new_status}
    if action is not None:
        values["action"] = action
        if action == VehicleAction.DISABLE:
            values["disabled_at"] = now or datetime.utcnow()

    result = await db.execute(
        update(Vehicle)
        .where(Vehicle.id == vehicle_id, Vehicle.status.in_(list(expected)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_action(
    db: AsyncSession,
    vehicle_id: int,
    action: VehicleAction,
    required_status: Optional[VehicleStatus] = None,
    now: Optional[datetime] = None
) -> bool:
    """
    Compare-and-set the device action flag.

    Only updates when the flag actually changes (and, if given, while the
    vehicle is in ``required_status``).

    Returns:
        True if the flag was changed by this call
    """
    values = {"action": action}
    if action == VehicleAction.DISABLE:
        values["disabled_at"] = now or datetime.utcnow()

    stmt = update(Vehicle).where(Vehicle.id == vehicle_id, Vehicle.action != action)
    if required_status is not None:
        stmt = stmt.where(Vehicle.status == required_status)

    result = await db.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def count_by_status(db: AsyncSession) -> dict:
    """Vehicle counts per status, for the health endpoint and scripts."""
    result = await db.execute(
        select(Vehicle.status, func.count(Vehicle.id)).group_by(Vehicle.status)
    )
    counts = {status.value: 0 for status in VehicleStatus}
    for status, count in result.all():
        counts[status.value] = count
    return counts
