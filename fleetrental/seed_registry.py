"""
Database seeding script for a demo fleet.

Creates one hub, two drivers and a handful of vehicles of every type.
Run this script after the database is set up but before first use.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fleetrental.app.db.session import AsyncSessionLocal, engine, Base
from fleetrental.app.models.driver import Driver
from fleetrental.app.models.location import Location
from fleetrental.app.models.enums import VehicleType
from fleetrental.app.services import vehicle_registry
from sqlalchemy import select

# Import remaining models so create_all sees every table
from fleetrental.app.models.payment import Payment
from fleetrental.app.models.vehicle import Vehicle
from fleetrental.app.models.vehicle_request import VehicleRequest
from fleetrental.app.models.scheduled_job import ScheduledJob
from fleetrental.app.models.dlq import DeadLetterQueue
from fleetrental.app.models.audit_log import AuditLog

HUB_NAME = "Bengaluru Central Hub"

DEMO_VEHICLES = [
    ("KA01EV0001", VehicleType.TWO_WHEELER, 600.0),
    ("KA01EV0002", VehicleType.TWO_WHEELER, 600.0),
    ("KA01EV0003", VehicleType.TWO_WHEELER, 600.0),
    ("KA01EV3001", VehicleType.THREE_WHEELER_5_8, 900.0),
    ("KA01EV3101", VehicleType.THREE_WHEELER_10, 1100.0),
    ("KA01EV4001", VehicleType.FOUR_WHEELER, 1500.0),
]


async def seed_registry():
    """
    Seed the demo hub, drivers and vehicles.

    Creates:
    - 1 location
    - 2 drivers attached to it
    - 6 INACTIVE vehicles across all vehicle types
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting fleet seeding...")

        result = await db.execute(select(Location).where(Location.name == HUB_NAME))
        if result.scalar_one_or_none():
            print("ℹ️  Demo hub already exists, skipping seeding")
            return

        hub = Location(name=HUB_NAME)
        db.add(hub)
        await db.flush()
        print(f"✅ Created location {HUB_NAME} (id: {hub.id})")

        db.add_all([
            Driver(name="Demo Driver One", phone="9800000001", location_id=hub.id),
            Driver(name="Demo Driver Two", phone="9800000002", location_id=hub.id),
        ])
        print("✅ Created 2 drivers")

        for number, vehicle_type, rental_value in DEMO_VEHICLES:
            await vehicle_registry.create_vehicle(
                db, number, vehicle_type, rental_value=rental_value, location_id=hub.id
            )
            print(f"✅ Created vehicle {number} ({vehicle_type.value})")

        await db.commit()

        print("\n🎉 Fleet seeding completed successfully!")
        print(f"\nVehicles by status: {await vehicle_registry.count_by_status(db)}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed_registry())
