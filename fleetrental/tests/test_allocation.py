"""
Allocation Engine tests.

Request creation, primary allocation, approval/rejection, payments and
driver status.
"""

import pytest
from datetime import timedelta
from sqlalchemy import select

from fleetrental.app.core.exceptions import (
    ConflictError, InvalidStateError, NotFoundError, UnavailableError
)
from fleetrental.app.models.enums import (
    VehicleType, VehicleStatus, VehicleAction, RequestStatus, PaymentStatus
)
from fleetrental.app.models.payment import Payment
from fleetrental.app.models.scheduled_job import ScheduledJob, JobStatus
from fleetrental.app.models.audit_log import AuditLog
from fleetrental.app.services import request_ledger, vehicle_registry
from fleetrental.app.services.audit import AuditAction
from fleetrental.app.services.device_gateway import CommandIntent


async def _request(allocation_engine, db_session, driver_id, day0, days=5, vehicle_type=VehicleType.TWO_WHEELER):
    return await allocation_engine.create_primary_request(
        db_session, driver_id, vehicle_type, day0, day0 + timedelta(days=days), now=day0
    )


@pytest.mark.asyncio
async def test_create_primary_request(db_session, fleet, allocation_engine, day0):
    request = await _request(allocation_engine, db_session, fleet.driver_id, day0)

    assert request.status == RequestStatus.PENDING
    assert request.location_id == fleet.location_id
    assert request.vehicle_id is None

    audit = (await db_session.execute(
        select(AuditLog).where(AuditLog.request_id == request.id)
    )).scalars().all()
    assert [entry.action for entry in audit] == [AuditAction.REQUEST_CREATED]


@pytest.mark.asyncio
async def test_second_open_primary_is_a_conflict(db_session, fleet, allocation_engine, day0):
    first_id = (await _request(allocation_engine, db_session, fleet.driver_id, day0)).id

    with pytest.raises(ConflictError, match="already have an active request"):
        await _request(allocation_engine, db_session, fleet.driver_id, day0)

    stored = await request_ledger.get_request(db_session, first_id)
    assert stored.status == RequestStatus.PENDING

    # A rejected request no longer blocks the driver
    await allocation_engine.reject_request(db_session, first_id, reason="Wrong dates")
    second = await _request(allocation_engine, db_session, fleet.driver_id, day0)
    assert second.id != first_id


@pytest.mark.asyncio
async def test_create_primary_request_validation(db_session, fleet, allocation_engine, day0):
    with pytest.raises(InvalidStateError):
        await allocation_engine.create_primary_request(
            db_session, fleet.driver_id, VehicleType.TWO_WHEELER, day0, day0, now=day0
        )
    with pytest.raises(NotFoundError):
        await _request(allocation_engine, db_session, 999, day0)

    await allocation_engine.set_driver_active(db_session, fleet.driver_id, False)
    with pytest.raises(InvalidStateError, match="not active"):
        await _request(allocation_engine, db_session, fleet.driver_id, day0)


@pytest.mark.asyncio
async def test_allocate_vehicle_activates_and_schedules(db_session, fleet, allocation_engine, device_gateway, day0):
    request = await _request(allocation_engine, db_session, fleet.driver_id, day0)

    allocated = await allocation_engine.allocate_vehicle(db_session, request.id, fleet.v1_id, now=day0)

    assert allocated.status == RequestStatus.PROCESSED
    assert allocated.vehicle_id == fleet.v1_id
    vehicle = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)
    assert vehicle.status == VehicleStatus.ACTIVE
    assert vehicle.action == VehicleAction.ENABLE

    job = (await db_session.execute(
        select(ScheduledJob).where(ScheduledJob.key == f"deactivate:{request.id}")
    )).scalar_one()
    assert job.status == JobStatus.PENDING
    assert job.fire_at == request.end_date
    assert job.payload == {"request_id": request.id}

    # Device was never disabled, so nothing to send
    assert device_gateway.sent == []


@pytest.mark.asyncio
async def test_busy_vehicle_is_unavailable_and_request_stays_pending(db_session, fleet, allocation_engine, day0):
    first_id = (await _request(allocation_engine, db_session, fleet.driver_id, day0)).id
    second_id = (await _request(allocation_engine, db_session, fleet.other_driver_id, day0)).id
    await allocation_engine.allocate_vehicle(db_session, first_id, fleet.v1_id, now=day0)

    with pytest.raises(UnavailableError) as exc_info:
        await allocation_engine.allocate_vehicle(db_session, second_id, fleet.v1_id, now=day0)
    assert exc_info.value.details["vehicle_id"] == fleet.v1_id

    still_pending = await request_ledger.get_request(db_session, second_id)
    assert still_pending.status == RequestStatus.PENDING
    assert still_pending.vehicle_id is None

    # Choose another vehicle
    allocated = await allocation_engine.allocate_vehicle(db_session, second_id, fleet.v2_id, now=day0)
    assert allocated.vehicle_id == fleet.v2_id


@pytest.mark.asyncio
async def test_vehicle_type_mismatch_is_unavailable(db_session, fleet, allocation_engine, day0):
    request_id = (await _request(allocation_engine, db_session, fleet.driver_id, day0)).id

    with pytest.raises(UnavailableError, match="type"):
        await allocation_engine.allocate_vehicle(db_session, request_id, fleet.truck_id, now=day0)

    truck = await vehicle_registry.get_vehicle(db_session, fleet.truck_id)
    assert truck.status == VehicleStatus.INACTIVE


@pytest.mark.asyncio
async def test_allocate_checks_request_state(db_session, fleet, allocation_engine, day0):
    request_id = (await _request(allocation_engine, db_session, fleet.driver_id, day0)).id
    await allocation_engine.allocate_vehicle(db_session, request_id, fleet.v1_id, now=day0)

    with pytest.raises(InvalidStateError):
        await allocation_engine.allocate_vehicle(db_session, request_id, fleet.v2_id, now=day0)
    with pytest.raises(NotFoundError):
        await allocation_engine.allocate_vehicle(db_session, 999, fleet.v2_id, now=day0)

    other_id = (await _request(allocation_engine, db_session, fleet.other_driver_id, day0)).id
    with pytest.raises(NotFoundError):
        await allocation_engine.allocate_vehicle(db_session, other_id, 999, now=day0)

    # v2 untouched by the failed attempts
    v2 = await vehicle_registry.get_vehicle(db_session, fleet.v2_id)
    assert v2.status == VehicleStatus.INACTIVE


@pytest.mark.asyncio
async def test_approved_request_can_be_allocated(db_session, fleet, allocation_engine, day0):
    request_id = (await _request(allocation_engine, db_session, fleet.driver_id, day0)).id

    approved = await allocation_engine.approve_request(db_session, request_id, actor="ops@fleet")
    assert approved.status == RequestStatus.APPROVED
    with pytest.raises(InvalidStateError):
        await allocation_engine.approve_request(db_session, request_id)

    allocated = await allocation_engine.allocate_vehicle(db_session, request_id, fleet.v1_id, now=day0)
    assert allocated.status == RequestStatus.PROCESSED

    with pytest.raises(InvalidStateError):
        await allocation_engine.reject_request(db_session, request_id, reason="Too late")


@pytest.mark.asyncio
async def test_allocating_immobilised_vehicle_sends_enable(db_session, fleet, allocation_engine, device_gateway, day0):
    await vehicle_registry.set_action(db_session, fleet.v1_id, VehicleAction.DISABLE, now=day0)
    await db_session.commit()
    request = await _request(allocation_engine, db_session, fleet.driver_id, day0)

    await allocation_engine.allocate_vehicle(db_session, request.id, fleet.v1_id, now=day0)

    assert device_gateway.sent == [("KA01AB1001", CommandIntent.ENABLE)]
    vehicle = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)
    assert vehicle.action == VehicleAction.ENABLE


@pytest.mark.asyncio
async def test_confirm_payment_attaches_confirmed_only(db_session, fleet, allocation_engine, day0):
    request = await _request(allocation_engine, db_session, fleet.driver_id, day0)

    with pytest.raises(InvalidStateError, match="PENDING"):
        await allocation_engine.confirm_payment(
            db_session, request.id, order_id="ORD-100", amount=600.0, status=PaymentStatus.PENDING
        )
    stored = await request_ledger.get_request(db_session, request.id)
    assert stored.payment_id is None
    recorded = (await db_session.execute(select(Payment).where(Payment.order_id == "ORD-100"))).scalar_one()
    assert recorded.status == PaymentStatus.PENDING

    # The collaborator later reports the same order as confirmed
    payment = await allocation_engine.confirm_payment(
        db_session, request.id, order_id="ORD-100", amount=600.0,
        status=PaymentStatus.CONFIRMED, transaction_id="TXN-1"
    )
    stored = await request_ledger.get_request(db_session, request.id)
    assert stored.payment_id == payment.id
    assert payment.paid_at is not None

    # Replay is a no-op
    replay = await allocation_engine.confirm_payment(
        db_session, request.id, order_id="ORD-100", amount=600.0, status=PaymentStatus.CONFIRMED
    )
    assert replay.id == payment.id

    with pytest.raises(ConflictError):
        await allocation_engine.confirm_payment(
            db_session, request.id, order_id="ORD-200", amount=600.0, status=PaymentStatus.CONFIRMED
        )


@pytest.mark.asyncio
async def test_get_request_status(db_session, fleet, allocation_engine, day0):
    empty = await allocation_engine.get_request_status(db_session, fleet.driver_id)
    assert empty["primary"] is None and empty["spare"] is None

    request = await _request(allocation_engine, db_session, fleet.driver_id, day0)
    status = await allocation_engine.get_request_status(db_session, fleet.driver_id)
    assert status["primary"].id == request.id
    assert status["spare"] is None

    with pytest.raises(NotFoundError):
        await allocation_engine.get_request_status(db_session, 999)


@pytest.mark.asyncio
async def test_set_driver_active_unknown_driver(db_session, fleet, allocation_engine):
    with pytest.raises(NotFoundError):
        await allocation_engine.set_driver_active(db_session, 999, False)

    driver = await allocation_engine.set_driver_active(db_session, fleet.other_driver_id, False)
    assert driver.is_active is False
