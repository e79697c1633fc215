"""
Centralized Test Configuration.
"""

from datetime import datetime
from types import SimpleNamespace

import pytest
from httpx import AsyncClient, ASGITransport
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from fleetrental.app.main import app
from fleetrental.app.db.session import get_db, Base
from fleetrental.app.core.config import settings
from fleetrental.app.core.exceptions import ExternalServiceError
from fleetrental.app.core.redis_client import get_redis
import fleetrental.app.core.redis_client as redis_client_module
from fleetrental.app.models.driver import Driver
from fleetrental.app.models.location import Location
from fleetrental.app.models.enums import VehicleType
from fleetrental.app.services import vehicle_registry
from fleetrental.app.services.device_gateway import (
    DeviceCommandGateway, DeviceCommandResult, CommandIntent
)
from fleetrental.app.services.runtime import build_runtime

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock for engine-level tests
DAY0 = datetime(2030, 1, 1, 8, 0, 0)


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.unreachable = False

    def _check(self):
        if self.unreachable:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        self._check()
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def flushdb(self):
        self.store = {}


class FakeDeviceGateway(DeviceCommandGateway):
    """Records commands instead of calling the telematics API."""

    def __init__(self):
        super().__init__(api_url="http://devices.test/graphql", token="test-token")
        self.sent = []
        self.fail = False

    async def send_command(self, vehicle_number, intent):
        intent = CommandIntent(intent)
        if self.fail:
            raise ExternalServiceError(
                "device_gateway",
                "Device API unreachable",
                details={"vehicle_number": vehicle_number, "intent": intent.value}
            )
        self.sent.append((vehicle_number, intent))
        return DeviceCommandResult(vehicle_number, intent, success=True, message="Command queued")


@pytest.fixture
def redis_mock():
    return MockRedis()


@pytest.fixture
def device_gateway():
    return FakeDeviceGateway()


@pytest.fixture
def runtime(device_gateway):
    return build_runtime(TestingSessionLocal, settings, gateway=device_gateway)


@pytest.fixture
def allocation_engine(runtime):
    return runtime.allocation


@pytest.fixture
def scheduler(runtime):
    return runtime.scheduler


@pytest.fixture(autouse=True)
def apply_overrides(runtime, redis_mock):
    """Point the app at the test database, the mock Redis and the test runtime."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_mock

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_mock

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.state.runtime = runtime
    yield

    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client


@pytest.fixture(autouse=True)
async def setup_database(runtime):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    await runtime.scheduler.stop()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


async def seed_fleet(session: AsyncSession) -> SimpleNamespace:
    """
    Two drivers, one location, three 2-wheelers and one 4-wheeler.

    Returns plain ids: engine calls that fail roll back the session and
    expire every loaded row.
    """
    location = Location(name="Bengaluru Hub")
    session.add(location)
    await session.flush()

    driver = Driver(name="Asha", phone="9000000001", location_id=location.id)
    other_driver = Driver(name="Ravi", phone="9000000002", location_id=location.id)
    session.add_all([driver, other_driver])
    await session.flush()

    v1 = await vehicle_registry.create_vehicle(session, "KA01AB1001", VehicleType.TWO_WHEELER, location_id=location.id)
    v2 = await vehicle_registry.create_vehicle(session, "KA01AB1002", VehicleType.TWO_WHEELER, location_id=location.id)
    v3 = await vehicle_registry.create_vehicle(session, "KA01AB1003", VehicleType.TWO_WHEELER, location_id=location.id)
    truck = await vehicle_registry.create_vehicle(session, "KA01AB4001", VehicleType.FOUR_WHEELER, location_id=location.id)
    await session.commit()

    return SimpleNamespace(
        location_id=location.id,
        driver_id=driver.id,
        other_driver_id=other_driver.id,
        v1_id=v1.id,
        v2_id=v2.id,
        v3_id=v3.id,
        truck_id=truck.id
    )


@pytest.fixture
async def fleet(db_session):
    return await seed_fleet(db_session)


@pytest.fixture
def day0():
    return DAY0


@pytest.fixture
def seed():
    """Seeding helper for tests that manage their own database."""
    return seed_fleet
