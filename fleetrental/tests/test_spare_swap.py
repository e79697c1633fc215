"""
Spare vehicle swap tests.

A driver whose rented vehicle breaks down gets a temporary replacement that
ends together with the original rental.
"""

import pytest
from datetime import timedelta
from sqlalchemy import select

from fleetrental.app.core.exceptions import ConflictError, InvalidStateError, NotFoundError, UnavailableError
from fleetrental.app.models.enums import VehicleType, VehicleStatus, VehicleAction, RequestType, RequestStatus
from fleetrental.app.models.scheduled_job import ScheduledJob
from fleetrental.app.services import request_ledger, vehicle_registry
from fleetrental.app.services.device_gateway import CommandIntent


async def _allocated_primary(allocation_engine, db_session, fleet, day0):
    request = await allocation_engine.create_primary_request(
        db_session, fleet.driver_id, VehicleType.TWO_WHEELER, day0, day0 + timedelta(days=5), now=day0
    )
    return await allocation_engine.allocate_vehicle(db_session, request.id, fleet.v1_id, now=day0)


@pytest.mark.asyncio
async def test_five_day_rental_with_spare_on_day_three(
    db_session, fleet, allocation_engine, scheduler, device_gateway, day0
):
    day3 = day0 + timedelta(days=3)
    day5 = day0 + timedelta(days=5)

    primary = await _allocated_primary(allocation_engine, db_session, fleet, day0)

    spare = await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day3)
    assert spare.request_type == RequestType.SPARE
    assert spare.primary_request_id == primary.id
    assert spare.vehicle_type == primary.vehicle_type
    assert spare.location_id == primary.location_id
    assert spare.start_date == day3
    assert spare.end_date == day5

    spare = await allocation_engine.allocate_spare_vehicle(db_session, spare.id, fleet.v2_id, now=day3)
    assert spare.status == RequestStatus.PROCESSED

    v1 = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)
    v2 = await vehicle_registry.get_vehicle(db_session, fleet.v2_id)
    assert v1.status == VehicleStatus.UNDER_REPAIR
    assert v2.status == VehicleStatus.ACTIVE

    jobs = (await db_session.execute(select(ScheduledJob).order_by(ScheduledJob.key))).scalars().all()
    assert {job.key: job.fire_at for job in jobs} == {
        f"deactivate:{primary.id}": day5,
        f"deactivate:{spare.id}": day5,
    }

    # Nothing is due before the end date
    assert await scheduler.run_due_jobs(day5 - timedelta(minutes=1)) == 0

    await scheduler.run_due_jobs(day5)

    v1 = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)
    v2 = await vehicle_registry.get_vehicle(db_session, fleet.v2_id)
    assert v1.status == VehicleStatus.INACTIVE
    assert v2.status == VehicleStatus.INACTIVE
    assert v1.action == VehicleAction.DISABLE
    assert v2.action == VehicleAction.DISABLE
    assert sorted(device_gateway.sent) == [
        ("KA01AB1001", CommandIntent.DISABLE),
        ("KA01AB1002", CommandIntent.DISABLE),
    ]

    for request_id in (primary.id, spare.id):
        stored = await request_ledger.get_request(db_session, request_id)
        assert stored.disabled_at == day5


@pytest.mark.asyncio
async def test_spare_requires_active_primary(db_session, fleet, allocation_engine, day0):
    with pytest.raises(NotFoundError, match="No active vehicle request"):
        await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day0)

    # A PENDING primary is not enough
    await allocation_engine.create_primary_request(
        db_session, fleet.driver_id, VehicleType.TWO_WHEELER, day0, day0 + timedelta(days=5), now=day0
    )
    with pytest.raises(NotFoundError):
        await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day0)


@pytest.mark.asyncio
async def test_spare_after_primary_ended_is_not_found(db_session, fleet, allocation_engine, day0):
    await _allocated_primary(allocation_engine, db_session, fleet, day0)

    with pytest.raises(NotFoundError):
        await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day0 + timedelta(days=6))


@pytest.mark.asyncio
async def test_second_open_spare_is_a_conflict(db_session, fleet, allocation_engine, day0):
    await _allocated_primary(allocation_engine, db_session, fleet, day0)
    day1 = day0 + timedelta(days=1)

    spare_id = (await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day1)).id
    with pytest.raises(ConflictError, match="spare"):
        await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day1)

    # Still a conflict once the first spare is on the road
    await allocation_engine.allocate_spare_vehicle(db_session, spare_id, fleet.v2_id, now=day1)
    with pytest.raises(ConflictError):
        await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day1)


@pytest.mark.asyncio
async def test_spare_vehicle_must_be_free(db_session, fleet, allocation_engine, day0):
    await _allocated_primary(allocation_engine, db_session, fleet, day0)
    day1 = day0 + timedelta(days=1)
    spare_id = (await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day1)).id

    with pytest.raises(UnavailableError):
        await allocation_engine.allocate_spare_vehicle(db_session, spare_id, fleet.v1_id, now=day1)

    # Another driver's rented vehicle
    other = await allocation_engine.create_primary_request(
        db_session, fleet.other_driver_id, VehicleType.TWO_WHEELER, day0, day0 + timedelta(days=5), now=day0
    )
    await allocation_engine.allocate_vehicle(db_session, other.id, fleet.v3_id, now=day0)
    with pytest.raises(UnavailableError):
        await allocation_engine.allocate_spare_vehicle(db_session, spare_id, fleet.v3_id, now=day1)

    with pytest.raises(UnavailableError):
        await allocation_engine.allocate_spare_vehicle(db_session, spare_id, fleet.truck_id, now=day1)

    # Primary vehicle stays on the road after the failed swaps
    v1 = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)
    assert v1.status == VehicleStatus.ACTIVE
    stored = await request_ledger.get_request(db_session, spare_id)
    assert stored.status == RequestStatus.PENDING


@pytest.mark.asyncio
async def test_primary_allocation_rejects_spare_requests(db_session, fleet, allocation_engine, day0):
    await _allocated_primary(allocation_engine, db_session, fleet, day0)
    spare = await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day0 + timedelta(days=1))

    with pytest.raises(InvalidStateError):
        await allocation_engine.allocate_vehicle(db_session, spare.id, fleet.v2_id, now=day0)


@pytest.mark.asyncio
async def test_disabling_primary_cascades_to_spare(db_session, fleet, allocation_engine, device_gateway, day0):
    primary = await _allocated_primary(allocation_engine, db_session, fleet, day0)
    day2 = day0 + timedelta(days=2)
    spare = await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day2)
    await allocation_engine.allocate_spare_vehicle(db_session, spare.id, fleet.v2_id, now=day2)

    outcome = await allocation_engine.disable_vehicle(db_session, primary.id, actor="ops@fleet", now=day2)

    assert outcome.vehicle_deactivated is True
    assert [c.request_id for c in outcome.cascaded] == [spare.id]
    assert outcome.cascaded[0].vehicle_deactivated is True
    v2 = await vehicle_registry.get_vehicle(db_session, fleet.v2_id)
    assert v2.status == VehicleStatus.INACTIVE
    assert len(device_gateway.sent) == 2


@pytest.mark.asyncio
async def test_second_spare_after_first_spare_was_disabled(db_session, fleet, allocation_engine, day0):
    primary_id = (await _allocated_primary(allocation_engine, db_session, fleet, day0)).id
    day1 = day0 + timedelta(days=1)
    day2 = day0 + timedelta(days=2)

    first_spare_id = (await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day1)).id
    await allocation_engine.allocate_spare_vehicle(db_session, first_spare_id, fleet.v2_id, now=day1)
    await allocation_engine.disable_vehicle(db_session, first_spare_id, actor="ops@fleet", now=day2)

    # Primary vehicle is still in the workshop
    v1 = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)
    assert v1.status == VehicleStatus.UNDER_REPAIR

    second_spare_id = (await allocation_engine.request_spare_vehicle(db_session, fleet.driver_id, now=day2)).id
    allocated = await allocation_engine.allocate_spare_vehicle(db_session, second_spare_id, fleet.v3_id, now=day2)

    assert allocated.status == RequestStatus.PROCESSED
    assert allocated.vehicle_id == fleet.v3_id
    v1 = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)
    v3 = await vehicle_registry.get_vehicle(db_session, fleet.v3_id)
    assert v1.status == VehicleStatus.UNDER_REPAIR
    assert v3.status == VehicleStatus.ACTIVE

    primary = await request_ledger.get_request(db_session, primary_id)
    job = (await db_session.execute(
        select(ScheduledJob).where(ScheduledJob.key == f"deactivate:{second_spare_id}")
    )).scalar_one()
    assert job.fire_at == primary.end_date
