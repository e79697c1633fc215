"""
FastAPI Application Entry Point.

This is the main application file for the Fleet Rental Engine.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetrental.app.core.config import settings
from fleetrental.app.core.observability import ObservabilityMiddleware, configure_logging
from fleetrental.app.core.redis_client import redis_client, ping_redis
from fleetrental.app.api.v1.router import router as api_v1_router
from fleetrental.app.db.session import engine, Base, AsyncSessionLocal, get_db
from fleetrental.app.services.runtime import build_runtime
from fleetrental.app.services.vehicle_registry import count_by_status
from fleetrental.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from fleetrental.app.models.location import Location
from fleetrental.app.models.driver import Driver
from fleetrental.app.models.payment import Payment
from fleetrental.app.models.vehicle import Vehicle
from fleetrental.app.models.vehicle_request import VehicleRequest
from fleetrental.app.models.scheduled_job import ScheduledJob
from fleetrental.app.models.dlq import DeadLetterQueue
from fleetrental.app.models.audit_log import AuditLog

logger = logging.getLogger("fleetrental.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Builds the engine runtime and starts the deactivation scheduler,
       which re-arms persisted jobs and runs a recovery sweep.
    3. Stops scheduler timers on shutdown; job rows stay in the database.
    """
    configure_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    runtime = build_runtime(AsyncSessionLocal, settings, redis=redis_client)
    app.state.runtime = runtime
    if settings.scheduler_enabled:
        await runtime.scheduler.start()
    else:
        logger.warning("Deactivation scheduler disabled by configuration")

    yield

    await runtime.scheduler.stop()
    await engine.dispose()

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Vehicle allocation and lifecycle engine for fleet rentals",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
        dict: Status, scheduler state and vehicle counts per status
    """
    runtime = getattr(app.state, "runtime", None)
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "scheduler_running": bool(runtime and runtime.scheduler.running),
        "device_circuit": runtime.gateway.breaker.state if runtime else None,
        "redis": await ping_redis(),
        "vehicles": await count_by_status(db),
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the Fleet Rental Engine API",
        "docs": "/docs",
        "health": "/health",
    }
