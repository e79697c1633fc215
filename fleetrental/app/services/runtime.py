"""
Engine runtime wiring.

Builds the gateway, scheduler, deactivation routine and allocation engine
once per process. The FastAPI lifespan stores the result on ``app.state``.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetrental.app.core.config import Settings
from fleetrental.app.services.allocation import AllocationEngine
from fleetrental.app.services.deactivation import DeactivationService
from fleetrental.app.services.device_gateway import DeviceCommandGateway
from fleetrental.app.services.scheduler import DeactivationScheduler


@dataclass
class EngineRuntime:
    gateway: DeviceCommandGateway
    scheduler: DeactivationScheduler
    deactivation: DeactivationService
    allocation: AllocationEngine


def build_runtime(
    session_factory: async_sessionmaker,
    settings: Settings,
    redis=None,
    gateway: Optional[DeviceCommandGateway] = None
) -> EngineRuntime:
    """
    Wire the engine services together.

    Args:
        session_factory: Session factory used by fired jobs and sweeps
        settings: Application settings
        redis: Redis client for the sweep lease (None disables the lease)
        gateway: Pre-built gateway, otherwise one is built from settings
    """
    gateway = gateway or DeviceCommandGateway.from_settings(settings)
    scheduler = DeactivationScheduler(
        session_factory,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        redis=redis,
        lease_ttl_seconds=settings.sweep_lock_ttl_seconds
    )
    deactivation = DeactivationService(
        scheduler,
        gateway,
        reenable_grace_hours=settings.reenable_grace_hours,
        device_max_retries=settings.device_max_retries
    )
    deactivation.install()
    allocation = AllocationEngine(scheduler, deactivation, gateway)
    return EngineRuntime(
        gateway=gateway,
        scheduler=scheduler,
        deactivation=deactivation,
        allocation=allocation
    )
