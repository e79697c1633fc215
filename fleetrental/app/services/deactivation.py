"""
Deactivation routine.

Shared by the scheduler callbacks, the recovery sweep and the admin disable
path. The routine is idempotent: the request's ``disabled_at`` and the
vehicle's status are both moved with conditional updates, so a second run
changes nothing and sends no device command.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fleetrental.app.core.exceptions import InvalidStateError
from fleetrental.app.models.enums import (
    VehicleStatus, VehicleAction, RequestType, RequestStatus, DEACTIVATABLE_STATUSES
)
from fleetrental.app.models.vehicle import Vehicle
from fleetrental.app.services import request_ledger, vehicle_registry
from fleetrental.app.services.audit import record_event, AuditAction, SYSTEM_ACTOR
from fleetrental.app.services.device_gateway import (
    DeviceCommandGateway, DeviceCommandResult, CommandIntent, retry_failed_commands
)
from fleetrental.app.services.scheduler import DeactivationScheduler

logger = logging.getLogger("fleetrental.deactivation")

DEACTIVATE_CALLBACK = "deactivate_request"
REENABLE_CALLBACK = "reenable_vehicle"


def deactivation_key(request_id: int) -> str:
    return f"deactivate:{request_id}"


def reenable_key(request_id: int) -> str:
    return f"reenable:{request_id}"


@dataclass
class DeactivationOutcome:
    request_id: int
    vehicle_id: Optional[int]
    request_disabled: bool = False
    vehicle_deactivated: bool = False
    device_result: Optional[DeviceCommandResult] = None
    cascaded: List["DeactivationOutcome"] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "vehicle_id": self.vehicle_id,
            "request_disabled": self.request_disabled,
            "vehicle_deactivated": self.vehicle_deactivated,
            "device_command_sent": bool(self.device_result and self.device_result.success),
            "cascaded": [outcome.as_dict() for outcome in self.cascaded],
        }


class DeactivationService:
    """
    Disables vehicles whose rental ended and optionally re-enables them
    after a grace period.
    """

    def __init__(
        self,
        scheduler: DeactivationScheduler,
        gateway: DeviceCommandGateway,
        reenable_grace_hours: Optional[float] = None,
        device_max_retries: int = 5
    ):
        self.scheduler = scheduler
        self.gateway = gateway
        self.reenable_grace_hours = reenable_grace_hours
        self.device_max_retries = device_max_retries

    def install(self) -> None:
        """Register job callbacks and sweep steps on the scheduler."""
        self.scheduler.register(DEACTIVATE_CALLBACK, self._run_deactivate_job)
        self.scheduler.register(REENABLE_CALLBACK, self._run_reenable_job)
        self.scheduler.add_sweep_step("expired_requests", self.sweep_expired)
        self.scheduler.add_sweep_step("device_retries", self.retry_device_commands)

    async def deactivate_request(
        self,
        db: AsyncSession,
        request_id: int,
        now: Optional[datetime] = None,
        actor: Optional[str] = None,
        cascade: bool = True
    ) -> DeactivationOutcome:
        """
        Disable the vehicle of a PROCESSED request.

        Order of effects:
            1. stamp ``disabled_at`` on the request (first caller wins)
            2. vehicle ACTIVE/UNDER_REPAIR -> INACTIVE with action DISABLE
            3. commit, then send DISABLE to the device if step 2 happened
            4. for a PRIMARY, repeat for its active SPARE requests

        Raises:
            NotFoundError: If the request does not exist
            InvalidStateError: If the request was never allocated
        """
        now = now or datetime.utcnow()
        actor = actor or SYSTEM_ACTOR
        vehicle_request = await request_ledger.get_request(db, request_id)
        if vehicle_request.status != RequestStatus.PROCESSED:
            raise InvalidStateError(
                f"Only PROCESSED requests can be disabled, current status: {vehicle_request.status.value}",
                details={"request_id": request_id}
            )

        outcome = DeactivationOutcome(request_id=request_id, vehicle_id=vehicle_request.vehicle_id)
        vehicle_number = None
        try:
            outcome.request_disabled = await request_ledger.stamp_disabled(db, request_id, now)
            if not outcome.request_disabled:
                await db.rollback()
                logger.info("Request %s already disabled, nothing to do", request_id)
                return outcome

            if vehicle_request.vehicle_id is not None:
                outcome.vehicle_deactivated = await vehicle_registry.transition_status(
                    db,
                    vehicle_request.vehicle_id,
                    DEACTIVATABLE_STATUSES,
                    VehicleStatus.INACTIVE,
                    action=VehicleAction.DISABLE,
                    now=now
                )
                vehicle = await vehicle_registry.get_vehicle(db, vehicle_request.vehicle_id)
                vehicle_number = vehicle.vehicle_number

            # Admin path may run before the timer; the timer then has nothing to do
            await self.scheduler.cancel(db, deactivation_key(request_id))

            if outcome.vehicle_deactivated and self.reenable_grace_hours:
                await self.scheduler.schedule(
                    db,
                    reenable_key(request_id),
                    now + timedelta(hours=self.reenable_grace_hours),
                    REENABLE_CALLBACK,
                    {"request_id": request_id, "vehicle_id": vehicle_request.vehicle_id}
                )

            record_event(
                db,
                AuditAction.VEHICLE_DEACTIVATED,
                actor=actor,
                driver_id=vehicle_request.driver_id,
                vehicle_id=vehicle_request.vehicle_id,
                request_id=request_id,
                metadata={
                    "end_date": vehicle_request.end_date.isoformat(),
                    "vehicle_deactivated": outcome.vehicle_deactivated,
                }
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Request %s disabled (vehicle %s transitioned: %s)",
            request_id, vehicle_request.vehicle_id, outcome.vehicle_deactivated
        )

        if outcome.vehicle_deactivated:
            outcome.device_result = await self.gateway.dispatch(
                db, vehicle_number, CommandIntent.DISABLE
            )

        if cascade and vehicle_request.request_type == RequestType.PRIMARY:
            spare_ids = [spare.id for spare in await request_ledger.find_active_spares(db, request_id)]
            for spare_id in spare_ids:
                outcome.cascaded.append(
                    await self.deactivate_request(db, spare_id, now=now, actor=actor, cascade=False)
                )

        return outcome

    async def reactivate_vehicle(
        self,
        db: AsyncSession,
        vehicle_id: int,
        actor: Optional[str] = None,
        required_status: Optional[VehicleStatus] = None,
        request_id: Optional[int] = None
    ) -> Vehicle:
        """
        Set ``action = ENABLE`` and mobilise the device.

        No command is sent when the flag was already ENABLE.
        """
        vehicle = await vehicle_registry.get_vehicle(db, vehicle_id)
        try:
            changed = await vehicle_registry.set_action(
                db, vehicle_id, VehicleAction.ENABLE, required_status=required_status
            )
            if changed:
                record_event(
                    db,
                    AuditAction.VEHICLE_ENABLED,
                    actor=actor or SYSTEM_ACTOR,
                    vehicle_id=vehicle_id,
                    request_id=request_id
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if changed:
            await self.gateway.dispatch(db, vehicle.vehicle_number, CommandIntent.ENABLE)
        return await vehicle_registry.get_vehicle(db, vehicle_id)

    async def sweep_expired(self, db: AsyncSession, now: datetime) -> int:
        """Disable every PROCESSED request whose end date has passed."""
        disabled = 0
        for request_id in await request_ledger.list_expired_active(db, now):
            outcome = await self.deactivate_request(db, request_id, now=now)
            if outcome.request_disabled:
                disabled += 1
        if disabled:
            logger.warning("Recovery sweep disabled %d overdue requests", disabled)
        return disabled

    async def retry_device_commands(self, db: AsyncSession, now: datetime) -> int:
        return await retry_failed_commands(db, self.gateway, self.device_max_retries, now)

    async def _run_deactivate_job(self, db: AsyncSession, payload: Dict[str, Any], now: datetime) -> None:
        await self.deactivate_request(db, payload["request_id"], now=now)

    async def _run_reenable_job(self, db: AsyncSession, payload: Dict[str, Any], now: datetime) -> None:
        await self.reactivate_vehicle(
            db,
            payload["vehicle_id"],
            required_status=VehicleStatus.INACTIVE,
            request_id=payload.get("request_id")
        )
