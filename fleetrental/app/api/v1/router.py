"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from fleetrental.app.api.v1.endpoints import (
    vehicles, vehicle_requests, payments, drivers, admin_ops
)

router = APIRouter()

# Vehicle Registry
router.include_router(vehicles.router)

# Request Ledger and Allocation Engine
router.include_router(vehicle_requests.router)
router.include_router(payments.router)
router.include_router(drivers.router)

# Scheduler, dead letters and audit trail
router.include_router(admin_ops.router)
