"""
Request Ledger service.

Owns the lifecycle of rental (PRIMARY) and replacement (SPARE) requests.
Every status change is a conditional update guarded by the current status;
callers check the returned flag and decide which error to raise.
"""

from datetime import datetime
from typing import Optional, Tuple, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, or_, and_

from fleetrental.app.core.exceptions import NotFoundError
from fleetrental.app.models.vehicle_request import VehicleRequest
from fleetrental.app.models.enums import (
    VehicleType, RequestType, RequestStatus, ALLOCATABLE_STATUSES
)


async def create_request(
    db: AsyncSession,
    driver_id: int,
    vehicle_type: VehicleType,
    request_type: RequestType,
    start_date: datetime,
    end_date: datetime,
    location_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    primary_request_id: Optional[int] = None
) -> VehicleRequest:
    """Insert a PENDING request. Invariants are checked by the caller."""
    vehicle_request = VehicleRequest(
        driver_id=driver_id,
        location_id=location_id,
        vehicle_type=vehicle_type,
        request_type=request_type,
        start_date=start_date,
        end_date=end_date,
        payment_id=payment_id,
        primary_request_id=primary_request_id,
        status=RequestStatus.PENDING
    )
    db.add(vehicle_request)
    await db.flush()
    return vehicle_request


async def get_request(db: AsyncSession, request_id: int) -> VehicleRequest:
    """
    Load a request by id.

    Raises:
        NotFoundError: If the request does not exist
    """
    # Status fields change through bulk updates, so always reload the row
    result = await db.execute(
        select(VehicleRequest)
        .where(VehicleRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    vehicle_request = result.scalar_one_or_none()
    if not vehicle_request:
        raise NotFoundError("Vehicle request", request_id)
    return vehicle_request


def _open_clause(now: datetime):
    # Waiting for a vehicle, or allocated and neither expired nor disabled
    return or_(
        VehicleRequest.status.in_(ALLOCATABLE_STATUSES),
        and_(
            VehicleRequest.status == RequestStatus.PROCESSED,
            VehicleRequest.disabled_at.is_(None),
            VehicleRequest.end_date > now
        )
    )


async def find_open_request(
    db: AsyncSession,
    driver_id: int,
    request_type: RequestType,
    now: Optional[datetime] = None
) -> Optional[VehicleRequest]:
    """
    Find the driver's open request of the given type.

    Open means PENDING/APPROVED, or PROCESSED with no ``disabled_at`` and an
    end date still in the future.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(VehicleRequest).where(
            VehicleRequest.driver_id == driver_id,
            VehicleRequest.request_type == request_type,
            _open_clause(now)
        ).order_by(VehicleRequest.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def find_open_primary(
    db: AsyncSession,
    driver_id: int,
    now: Optional[datetime] = None
) -> Optional[VehicleRequest]:
    return await find_open_request(db, driver_id, RequestType.PRIMARY, now)


async def find_open_spare(
    db: AsyncSession,
    driver_id: int,
    now: Optional[datetime] = None
) -> Optional[VehicleRequest]:
    return await find_open_request(db, driver_id, RequestType.SPARE, now)


async def find_active_primary(
    db: AsyncSession,
    driver_id: int,
    now: Optional[datetime] = None
) -> Optional[VehicleRequest]:
    """
    Find the PROCESSED, non-disabled PRIMARY request whose date range
    contains ``now``.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(VehicleRequest).where(
            VehicleRequest.driver_id == driver_id,
            VehicleRequest.request_type == RequestType.PRIMARY,
            VehicleRequest.status == RequestStatus.PROCESSED,
            VehicleRequest.disabled_at.is_(None),
            VehicleRequest.start_date <= now,
            VehicleRequest.end_date >= now
        ).order_by(VehicleRequest.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def find_active_spares(
    db: AsyncSession,
    primary_request_id: int
) -> List[VehicleRequest]:
    """PROCESSED, non-disabled SPARE requests hanging off a PRIMARY."""
    result = await db.execute(
        select(VehicleRequest).where(
            VehicleRequest.primary_request_id == primary_request_id,
            VehicleRequest.request_type == RequestType.SPARE,
            VehicleRequest.status == RequestStatus.PROCESSED,
            VehicleRequest.disabled_at.is_(None)
        )
    )
    return result.scalars().all()


async def mark_processed(
    db: AsyncSession,
    request_id: int,
    vehicle_id: int,
    now: Optional[datetime] = None
) -> bool:
    """
    Compare-and-set PENDING/APPROVED -> PROCESSED with the vehicle attached.

    Returns:
        True if this call processed the request
    """
    result = await db.execute(
        update(VehicleRequest)
        .where(
            VehicleRequest.id == request_id,
            VehicleRequest.status.in_(ALLOCATABLE_STATUSES)
        )
        .values(
            status=RequestStatus.PROCESSED,
            vehicle_id=vehicle_id,
            processed_at=now or datetime.utcnow()
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_approved(db: AsyncSession, request_id: int) -> bool:
    """Compare-and-set PENDING -> APPROVED."""
    result = await db.execute(
        update(VehicleRequest)
        .where(
            VehicleRequest.id == request_id,
            VehicleRequest.status == RequestStatus.PENDING
        )
        .values(status=RequestStatus.APPROVED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_rejected(
    db: AsyncSession,
    request_id: int,
    reason: Optional[str] = None
) -> bool:
    """Compare-and-set PENDING/APPROVED -> REJECTED."""
    result = await db.execute(
        update(VehicleRequest)
        .where(
            VehicleRequest.id == request_id,
            VehicleRequest.status.in_(ALLOCATABLE_STATUSES)
        )
        .values(status=RequestStatus.REJECTED, rejected_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def stamp_disabled(
    db: AsyncSession,
    request_id: int,
    now: Optional[datetime] = None
) -> bool:
    """
    Record that deactivation fired for a PROCESSED request.

    Only the first caller wins: the update requires ``disabled_at IS NULL``.
    """
    result = await db.execute(
        update(VehicleRequest)
        .where(
            VehicleRequest.id == request_id,
            VehicleRequest.status == RequestStatus.PROCESSED,
            VehicleRequest.disabled_at.is_(None)
        )
        .values(disabled_at=now or datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def attach_payment(db: AsyncSession, request_id: int, payment_id: int) -> bool:
    """Attach a payment once; an already attached payment is never replaced."""
    result = await db.execute(
        update(VehicleRequest)
        .where(
            VehicleRequest.id == request_id,
            VehicleRequest.payment_id.is_(None)
        )
        .values(payment_id=payment_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_expired_active(
    db: AsyncSession,
    now: Optional[datetime] = None,
    limit: int = 500
) -> List[int]:
    """
    Ids of PROCESSED requests past their end date that were never disabled.

    This is the recovery sweep's work list. Plain ids, since each
    deactivation commits or rolls back the session on its own.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(VehicleRequest.id).where(
            VehicleRequest.status == RequestStatus.PROCESSED,
            VehicleRequest.disabled_at.is_(None),
            VehicleRequest.end_date < now
        ).order_by(VehicleRequest.end_date, VehicleRequest.id).limit(limit)
    )
    return result.scalars().all()


async def latest_for_driver(
    db: AsyncSession,
    driver_id: int,
    request_type: RequestType
) -> Optional[VehicleRequest]:
    result = await db.execute(
        select(VehicleRequest).where(
            VehicleRequest.driver_id == driver_id,
            VehicleRequest.request_type == request_type
        ).order_by(VehicleRequest.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def list_requests(
    db: AsyncSession,
    status: Optional[RequestStatus] = None,
    request_type: Optional[RequestType] = None,
    driver_id: Optional[int] = None,
    location_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 50
) -> Tuple[List[VehicleRequest], int]:
    """
    List requests with optional filters, newest first.

    Returns:
        (requests for the requested page, total matching count)
    """
    filters = []
    if status is not None:
        filters.append(VehicleRequest.status == status)
    if request_type is not None:
        filters.append(VehicleRequest.request_type == request_type)
    if driver_id is not None:
        filters.append(VehicleRequest.driver_id == driver_id)
    if location_id is not None:
        filters.append(VehicleRequest.location_id == location_id)

    total = (await db.execute(
        select(func.count(VehicleRequest.id)).where(*filters)
    )).scalar()

    offset = (page - 1) * page_size
    result = await db.execute(
        select(VehicleRequest).where(*filters)
        .order_by(VehicleRequest.id.desc())
        .offset(offset).limit(page_size)
    )
    return result.scalars().all(), total
