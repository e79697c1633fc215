"""
Allocation Engine.

Orchestrates the Vehicle Registry and the Request Ledger: validates a
request, performs the registry and ledger transitions in one transaction,
schedules the deactivation job at the request's end date, and sends device
commands only after the transaction has committed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetrental.app.core.exceptions import (
    NotFoundError, ConflictError, InvalidStateError, UnavailableError
)
from fleetrental.app.models.driver import Driver
from fleetrental.app.models.payment import Payment
from fleetrental.app.models.vehicle import Vehicle
from fleetrental.app.models.vehicle_request import VehicleRequest
from fleetrental.app.models.enums import (
    VehicleType, VehicleStatus, VehicleAction, RequestType, RequestStatus,
    PaymentStatus, ALLOCATABLE_STATUSES
)
from fleetrental.app.services import request_ledger, vehicle_registry
from fleetrental.app.services.audit import record_event, AuditAction
from fleetrental.app.services.deactivation import (
    DeactivationService, DeactivationOutcome, DEACTIVATE_CALLBACK, deactivation_key
)
from fleetrental.app.services.device_gateway import DeviceCommandGateway, CommandIntent
from fleetrental.app.services.scheduler import DeactivationScheduler

logger = logging.getLogger("fleetrental.allocation")


class AllocationEngine:
    """
    Entry point for every request-level operation.

    Args:
        scheduler: Scheduler that owns the deactivation jobs
        deactivation: Shared deactivation routine
        gateway: Device command gateway
    """

    def __init__(
        self,
        scheduler: DeactivationScheduler,
        deactivation: DeactivationService,
        gateway: DeviceCommandGateway
    ):
        self.scheduler = scheduler
        self.deactivation = deactivation
        self.gateway = gateway

    async def _lock_driver(self, db: AsyncSession, driver_id: int) -> Driver:
        # Bumping the counter takes the driver row lock until commit
        result = await db.execute(
            update(Driver)
            .where(Driver.id == driver_id)
            .values(lock_version=Driver.lock_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError("Driver", driver_id)
        driver = (await db.execute(
            select(Driver)
            .where(Driver.id == driver_id)
            .execution_options(populate_existing=True)
        )).scalar_one()
        if not driver.is_active:
            raise InvalidStateError("Driver is not active", details={"driver_id": driver_id})
        return driver

    async def create_primary_request(
        self,
        db: AsyncSession,
        driver_id: int,
        vehicle_type: VehicleType,
        start_date: datetime,
        end_date: datetime,
        location_id: Optional[int] = None,
        actor: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> VehicleRequest:
        """
        Create a PENDING PRIMARY request.

        Raises:
            NotFoundError: Unknown driver or location
            InvalidStateError: Inactive driver or an empty/expired date range
            ConflictError: The driver already has an open PRIMARY request
        """
        now = now or datetime.utcnow()
        if end_date <= start_date:
            raise InvalidStateError(
                "End date must be after start date",
                details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()}
            )
        if end_date <= now:
            raise InvalidStateError("Rental period has already ended", details={"end_date": end_date.isoformat()})

        try:
            driver = await self._lock_driver(db, driver_id)

            existing = await request_ledger.find_open_primary(db, driver_id, now)
            if existing:
                raise ConflictError(
                    "You already have an active request",
                    details={"request_id": existing.id, "status": existing.status.value}
                )

            location_id = location_id or driver.location_id
            if location_id is not None:
                await vehicle_registry.ensure_location(db, location_id)

            vehicle_request = await request_ledger.create_request(
                db,
                driver_id=driver_id,
                vehicle_type=vehicle_type,
                request_type=RequestType.PRIMARY,
                start_date=start_date,
                end_date=end_date,
                location_id=location_id
            )
            record_event(
                db,
                AuditAction.REQUEST_CREATED,
                actor=actor,
                driver_id=driver_id,
                request_id=vehicle_request.id,
                metadata={"request_type": RequestType.PRIMARY.value, "vehicle_type": vehicle_type.value}
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Driver %s created primary request %s", driver_id, vehicle_request.id)
        return await request_ledger.get_request(db, vehicle_request.id)

    async def allocate_vehicle(
        self,
        db: AsyncSession,
        request_id: int,
        vehicle_id: int,
        actor: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> VehicleRequest:
        """
        Attach an INACTIVE vehicle to a waiting PRIMARY request.

        Raises:
            NotFoundError: Unknown request or vehicle
            InvalidStateError: Request is a SPARE, already decided, or expired
            UnavailableError: Vehicle is not INACTIVE or has the wrong type
        """
        now = now or datetime.utcnow()
        try:
            vehicle_request = await request_ledger.get_request(db, request_id)
            if vehicle_request.request_type != RequestType.PRIMARY:
                raise InvalidStateError(
                    "Spare requests are allocated through the spare allocation",
                    details={"request_id": request_id}
                )
            self._check_allocatable(vehicle_request, now)

            vehicle = await vehicle_registry.get_vehicle(db, vehicle_id)
            self._check_vehicle_type(vehicle, vehicle_request)
            device_was_disabled = vehicle.action == VehicleAction.DISABLE

            moved = await vehicle_registry.transition_status(
                db, vehicle_id, [VehicleStatus.INACTIVE], VehicleStatus.ACTIVE,
                action=VehicleAction.ENABLE
            )
            if not moved:
                raise UnavailableError(vehicle_id, details={"vehicle_number": vehicle.vehicle_number})

            if not await request_ledger.mark_processed(db, request_id, vehicle_id, now):
                raise InvalidStateError("Request is no longer waiting for a vehicle", details={"request_id": request_id})

            await self.scheduler.schedule(
                db,
                deactivation_key(request_id),
                vehicle_request.end_date,
                DEACTIVATE_CALLBACK,
                {"request_id": request_id}
            )
            record_event(
                db,
                AuditAction.VEHICLE_ALLOCATED,
                actor=actor,
                driver_id=vehicle_request.driver_id,
                vehicle_id=vehicle_id,
                request_id=request_id,
                metadata={"end_date": vehicle_request.end_date.isoformat()}
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Vehicle %s allocated to request %s", vehicle.vehicle_number, request_id)
        if device_was_disabled:
            await self.gateway.dispatch(db, vehicle.vehicle_number, CommandIntent.ENABLE)
        return await request_ledger.get_request(db, request_id)

    async def request_spare_vehicle(
        self,
        db: AsyncSession,
        driver_id: int,
        actor: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> VehicleRequest:
        """
        Create a PENDING SPARE request for the driver's active PRIMARY.

        The spare inherits vehicle type, location and payment, and ends
        together with the primary.

        Raises:
            NotFoundError: No active PRIMARY covers ``now``
            ConflictError: An open SPARE already exists
        """
        now = now or datetime.utcnow()
        try:
            await self._lock_driver(db, driver_id)

            primary = await request_ledger.find_active_primary(db, driver_id, now)
            if not primary:
                raise NotFoundError("Vehicle request", message="No active vehicle request")

            existing = await request_ledger.find_open_spare(db, driver_id, now)
            if existing:
                raise ConflictError(
                    "You already have an active spare request",
                    details={"request_id": existing.id, "status": existing.status.value}
                )

            spare = await request_ledger.create_request(
                db,
                driver_id=driver_id,
                vehicle_type=primary.vehicle_type,
                request_type=RequestType.SPARE,
                start_date=now,
                end_date=primary.end_date,
                location_id=primary.location_id,
                payment_id=primary.payment_id,
                primary_request_id=primary.id
            )
            record_event(
                db,
                AuditAction.REQUEST_CREATED,
                actor=actor,
                driver_id=driver_id,
                request_id=spare.id,
                metadata={"request_type": RequestType.SPARE.value, "primary_request_id": primary.id}
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Driver %s requested a spare for request %s", driver_id, primary.id)
        return await request_ledger.get_request(db, spare.id)

    async def allocate_spare_vehicle(
        self,
        db: AsyncSession,
        request_id: int,
        spare_vehicle_id: int,
        actor: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> VehicleRequest:
        """
        Swap in a spare: primary vehicle -> UNDER_REPAIR, spare -> ACTIVE.

        Raises:
            NotFoundError: Unknown request or vehicle
            InvalidStateError: Not a waiting SPARE, or the primary rental is over
            UnavailableError: Spare vehicle is not INACTIVE or has the wrong type
        """
        now = now or datetime.utcnow()
        try:
            spare_request = await request_ledger.get_request(db, request_id)
            if spare_request.request_type != RequestType.SPARE:
                raise InvalidStateError("Request is not a spare request", details={"request_id": request_id})
            self._check_allocatable(spare_request, now)

            primary = await request_ledger.get_request(db, spare_request.primary_request_id)
            if (
                primary.status != RequestStatus.PROCESSED
                or primary.disabled_at is not None
                or primary.end_date <= now
            ):
                raise InvalidStateError(
                    "Primary rental is no longer active",
                    details={"primary_request_id": primary.id}
                )
            if spare_vehicle_id == primary.vehicle_id:
                raise UnavailableError(spare_vehicle_id, message="Spare must differ from the primary vehicle, choose another")

            spare_vehicle = await vehicle_registry.get_vehicle(db, spare_vehicle_id)
            self._check_vehicle_type(spare_vehicle, spare_request)
            device_was_disabled = spare_vehicle.action == VehicleAction.DISABLE

            moved = await vehicle_registry.transition_status(
                db, spare_vehicle_id, [VehicleStatus.INACTIVE], VehicleStatus.ACTIVE,
                action=VehicleAction.ENABLE
            )
            if not moved:
                raise UnavailableError(spare_vehicle_id, details={"vehicle_number": spare_vehicle.vehicle_number})

            # Already UNDER_REPAIR when an earlier spare was disabled early
            repaired = await vehicle_registry.transition_status(
                db, primary.vehicle_id, [VehicleStatus.ACTIVE, VehicleStatus.UNDER_REPAIR], VehicleStatus.UNDER_REPAIR
            )
            if not repaired:
                raise InvalidStateError(
                    "Primary vehicle is not in service",
                    details={"vehicle_id": primary.vehicle_id}
                )

            if not await request_ledger.mark_processed(db, request_id, spare_vehicle_id, now):
                raise InvalidStateError("Request is no longer waiting for a vehicle", details={"request_id": request_id})

            await self.scheduler.schedule(
                db,
                deactivation_key(request_id),
                primary.end_date,
                DEACTIVATE_CALLBACK,
                {"request_id": request_id}
            )
            record_event(
                db,
                AuditAction.SPARE_ALLOCATED,
                actor=actor,
                driver_id=spare_request.driver_id,
                vehicle_id=spare_vehicle_id,
                request_id=request_id,
                metadata={
                    "primary_request_id": primary.id,
                    "primary_vehicle_id": primary.vehicle_id,
                    "end_date": primary.end_date.isoformat(),
                }
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Spare vehicle %s allocated to request %s, vehicle %s under repair",
            spare_vehicle.vehicle_number, request_id, primary.vehicle_id
        )
        if device_was_disabled:
            await self.gateway.dispatch(db, spare_vehicle.vehicle_number, CommandIntent.ENABLE)
        return await request_ledger.get_request(db, request_id)

    async def disable_vehicle(
        self,
        db: AsyncSession,
        request_id: int,
        actor: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> DeactivationOutcome:
        """Admin disable. Runs the same routine as the scheduled job."""
        return await self.deactivation.deactivate_request(db, request_id, now=now, actor=actor)

    async def approve_request(
        self,
        db: AsyncSession,
        request_id: int,
        actor: Optional[str] = None
    ) -> VehicleRequest:
        vehicle_request = await request_ledger.get_request(db, request_id)
        try:
            if not await request_ledger.mark_approved(db, request_id):
                raise InvalidStateError(
                    f"Only PENDING requests can be approved, current status: {vehicle_request.status.value}",
                    details={"request_id": request_id}
                )
            record_event(
                db, AuditAction.REQUEST_APPROVED, actor=actor,
                driver_id=vehicle_request.driver_id, request_id=request_id
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return await request_ledger.get_request(db, request_id)

    async def reject_request(
        self,
        db: AsyncSession,
        request_id: int,
        reason: Optional[str] = None,
        actor: Optional[str] = None
    ) -> VehicleRequest:
        vehicle_request = await request_ledger.get_request(db, request_id)
        try:
            if not await request_ledger.mark_rejected(db, request_id, reason):
                raise InvalidStateError(
                    f"Only waiting requests can be rejected, current status: {vehicle_request.status.value}",
                    details={"request_id": request_id}
                )
            record_event(
                db, AuditAction.REQUEST_REJECTED, actor=actor,
                driver_id=vehicle_request.driver_id, request_id=request_id,
                metadata={"reason": reason}
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return await request_ledger.get_request(db, request_id)

    async def confirm_payment(
        self,
        db: AsyncSession,
        request_id: int,
        order_id: str,
        amount: float,
        status: PaymentStatus,
        transaction_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        actor: Optional[str] = None
    ) -> Payment:
        """
        Record a payment result and attach it to the request when CONFIRMED.

        Replaying the same confirmation is a no-op.

        Raises:
            NotFoundError: Unknown request
            ConflictError: The request already carries a different payment,
                or the order id belongs to another driver
            InvalidStateError: The payment was recorded but is not confirmed
        """
        vehicle_request = await request_ledger.get_request(db, request_id)
        try:
            payment = (await db.execute(
                select(Payment).where(Payment.order_id == order_id)
            )).scalar_one_or_none()

            if payment is None:
                payment = Payment(
                    order_id=order_id,
                    driver_id=vehicle_request.driver_id,
                    amount=amount,
                    status=status,
                    transaction_id=transaction_id,
                    paid_at=paid_at
                )
                db.add(payment)
            elif payment.driver_id != vehicle_request.driver_id:
                raise ConflictError("Order belongs to another driver", details={"order_id": order_id})
            elif payment.status != PaymentStatus.CONFIRMED:
                # Later callbacks may upgrade a PENDING result
                payment.status = status
                payment.transaction_id = transaction_id or payment.transaction_id
                payment.paid_at = paid_at or payment.paid_at

            if payment.status == PaymentStatus.CONFIRMED and payment.paid_at is None:
                payment.paid_at = datetime.utcnow()
            await db.flush()

            if payment.status != PaymentStatus.CONFIRMED:
                await db.commit()
                raise InvalidStateError(
                    f"Payment {order_id} is {payment.status.value}, not attached",
                    details={"order_id": order_id, "request_id": request_id}
                )

            attached = await request_ledger.attach_payment(db, request_id, payment.id)
            if not attached and vehicle_request.payment_id != payment.id:
                raise ConflictError(
                    "Request already has a payment attached",
                    details={"request_id": request_id, "payment_id": vehicle_request.payment_id}
                )
            if attached:
                record_event(
                    db, AuditAction.PAYMENT_ATTACHED, actor=actor,
                    driver_id=vehicle_request.driver_id, request_id=request_id,
                    metadata={"order_id": order_id, "amount": payment.amount}
                )
            await db.commit()
        except InvalidStateError:
            raise
        except Exception:
            await db.rollback()
            raise

        logger.info("Payment %s confirmed for request %s", order_id, request_id)
        return payment

    async def enable_vehicle(
        self,
        db: AsyncSession,
        vehicle_id: int,
        actor: Optional[str] = None
    ) -> Vehicle:
        """Admin re-mobilise: action ENABLE and an ENABLE device command."""
        return await self.deactivation.reactivate_vehicle(db, vehicle_id, actor=actor)

    async def set_driver_active(
        self,
        db: AsyncSession,
        driver_id: int,
        is_active: bool,
        actor: Optional[str] = None
    ) -> Driver:
        try:
            result = await db.execute(
                update(Driver)
                .where(Driver.id == driver_id)
                .values(is_active=is_active)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFoundError("Driver", driver_id)
            record_event(
                db, AuditAction.DRIVER_STATUS_CHANGED, actor=actor,
                driver_id=driver_id, metadata={"is_active": is_active}
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return (await db.execute(
            select(Driver).where(Driver.id == driver_id).execution_options(populate_existing=True)
        )).scalar_one()

    async def get_request_status(self, db: AsyncSession, driver_id: int) -> Dict[str, Any]:
        """Latest PRIMARY and SPARE requests of a driver, for app polling."""
        driver = (await db.execute(select(Driver).where(Driver.id == driver_id))).scalar_one_or_none()
        if not driver:
            raise NotFoundError("Driver", driver_id)
        return {
            "driver_id": driver_id,
            "primary": await request_ledger.latest_for_driver(db, driver_id, RequestType.PRIMARY),
            "spare": await request_ledger.latest_for_driver(db, driver_id, RequestType.SPARE),
        }

    @staticmethod
    def _check_allocatable(vehicle_request: VehicleRequest, now: datetime) -> None:
        if vehicle_request.status not in ALLOCATABLE_STATUSES:
            raise InvalidStateError(
                f"Can only allocate a waiting request, current status: {vehicle_request.status.value}",
                details={"request_id": vehicle_request.id}
            )
        if vehicle_request.end_date <= now:
            raise InvalidStateError(
                "Rental period has already ended",
                details={"request_id": vehicle_request.id, "end_date": vehicle_request.end_date.isoformat()}
            )

    @staticmethod
    def _check_vehicle_type(vehicle: Vehicle, vehicle_request: VehicleRequest) -> None:
        if vehicle.vehicle_type != vehicle_request.vehicle_type:
            raise UnavailableError(
                vehicle.id,
                message="Vehicle type does not match the request, choose another",
                details={
                    "vehicle_type": vehicle.vehicle_type.value,
                    "requested_type": vehicle_request.vehicle_type.value,
                }
            )
