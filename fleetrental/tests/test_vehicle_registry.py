"""
Vehicle Registry tests.

Covers registration, the compare-and-set status primitive and the delete
guard.
"""

import pytest
from datetime import timedelta

from fleetrental.app.core.exceptions import ConflictError, NotFoundError
from fleetrental.app.models.enums import VehicleType, VehicleStatus, VehicleAction, DEFAULT_RENTAL_VALUE
from fleetrental.app.services import vehicle_registry


@pytest.mark.asyncio
async def test_new_vehicle_starts_inactive_and_enabled(db_session, fleet):
    vehicle = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)

    assert vehicle.status == VehicleStatus.INACTIVE
    assert vehicle.action == VehicleAction.ENABLE
    assert vehicle.rental_value == DEFAULT_RENTAL_VALUE
    assert vehicle.location_id == fleet.location_id


@pytest.mark.asyncio
async def test_duplicate_vehicle_number_rejected(db_session, fleet):
    with pytest.raises(ConflictError):
        await vehicle_registry.create_vehicle(db_session, "KA01AB1001", VehicleType.TWO_WHEELER)


@pytest.mark.asyncio
async def test_unknown_location_rejected(db_session, fleet):
    with pytest.raises(NotFoundError):
        await vehicle_registry.create_vehicle(db_session, "KA01ZZ0001", VehicleType.TWO_WHEELER, location_id=999)


@pytest.mark.asyncio
async def test_transition_status_is_compare_and_set(db_session, fleet):
    first = await vehicle_registry.transition_status(
        db_session, fleet.v1_id, [VehicleStatus.INACTIVE], VehicleStatus.ACTIVE
    )
    second = await vehicle_registry.transition_status(
        db_session, fleet.v1_id, [VehicleStatus.INACTIVE], VehicleStatus.ACTIVE
    )
    await db_session.commit()

    assert first is True
    assert second is False
    vehicle = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)
    assert vehicle.status == VehicleStatus.ACTIVE


@pytest.mark.asyncio
async def test_disable_transition_stamps_disabled_at(db_session, fleet, day0):
    await vehicle_registry.transition_status(
        db_session, fleet.v1_id, [VehicleStatus.INACTIVE], VehicleStatus.ACTIVE
    )
    moved = await vehicle_registry.transition_status(
        db_session,
        fleet.v1_id,
        [VehicleStatus.ACTIVE, VehicleStatus.UNDER_REPAIR],
        VehicleStatus.INACTIVE,
        action=VehicleAction.DISABLE,
        now=day0
    )
    await db_session.commit()

    vehicle = await vehicle_registry.get_vehicle(db_session, fleet.v1_id)
    assert moved is True
    assert vehicle.status == VehicleStatus.INACTIVE
    assert vehicle.action == VehicleAction.DISABLE
    assert vehicle.disabled_at == day0


@pytest.mark.asyncio
async def test_set_action_only_reports_real_changes(db_session, fleet):
    unchanged = await vehicle_registry.set_action(db_session, fleet.v1_id, VehicleAction.ENABLE)
    disabled = await vehicle_registry.set_action(db_session, fleet.v1_id, VehicleAction.DISABLE)
    # Requires ACTIVE, vehicle is INACTIVE
    guarded = await vehicle_registry.set_action(
        db_session, fleet.v1_id, VehicleAction.ENABLE, required_status=VehicleStatus.ACTIVE
    )
    await db_session.commit()

    assert unchanged is False
    assert disabled is True
    assert guarded is False


@pytest.mark.asyncio
async def test_update_vehicle_never_touches_status(db_session, fleet):
    vehicle = await vehicle_registry.update_vehicle(
        db_session, fleet.v1_id, rental_value=750.0, vehicle_type=VehicleType.THREE_WHEELER_10
    )
    await db_session.commit()

    assert vehicle.rental_value == 750.0
    assert vehicle.vehicle_type == VehicleType.THREE_WHEELER_10
    assert vehicle.status == VehicleStatus.INACTIVE


@pytest.mark.asyncio
async def test_delete_vehicle_guards(db_session, fleet, allocation_engine, day0):
    # Free vehicle without history can go
    await vehicle_registry.delete_vehicle(db_session, fleet.v3_id)
    await db_session.commit()
    with pytest.raises(NotFoundError):
        await vehicle_registry.get_vehicle(db_session, fleet.v3_id)

    request = await allocation_engine.create_primary_request(
        db_session, fleet.driver_id, VehicleType.TWO_WHEELER,
        day0, day0 + timedelta(days=5), now=day0
    )
    request_id = request.id
    await allocation_engine.allocate_vehicle(db_session, request_id, fleet.v1_id, now=day0)

    with pytest.raises(ConflictError):
        await vehicle_registry.delete_vehicle(db_session, fleet.v1_id)
    await db_session.rollback()

    # After the rental ended the vehicle still has history
    await allocation_engine.disable_vehicle(db_session, request_id, now=day0 + timedelta(days=5))
    with pytest.raises(ConflictError, match="rental history"):
        await vehicle_registry.delete_vehicle(db_session, fleet.v1_id)


@pytest.mark.asyncio
async def test_list_vehicles_filters_and_counts(db_session, fleet):
    await vehicle_registry.transition_status(
        db_session, fleet.v2_id, [VehicleStatus.INACTIVE], VehicleStatus.ACTIVE
    )
    await db_session.commit()

    inactive, total = await vehicle_registry.list_vehicles(
        db_session, status=VehicleStatus.INACTIVE, vehicle_type=VehicleType.TWO_WHEELER
    )
    assert total == 2
    assert {v.vehicle_number for v in inactive} == {"KA01AB1001", "KA01AB1003"}

    page, total = await vehicle_registry.list_vehicles(db_session, page=2, page_size=3)
    assert total == 4
    assert len(page) == 1

    counts = await vehicle_registry.count_by_status(db_session)
    assert counts == {"INACTIVE": 3, "ACTIVE": 1, "UNDER_REPAIR": 0}
