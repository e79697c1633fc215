"""
Admin Operations API Endpoints.

Endpoints for the scheduler, the device command dead-letter queue and the
audit trail.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from fleetrental.app.db.session import get_db
from fleetrental.app.core.config import settings
from fleetrental.app.core.dependencies import get_runtime
from fleetrental.app.core.exceptions import NotFoundError, InvalidStateError
from fleetrental.app.models.dlq import DeadLetterQueue, DLQStatus
from fleetrental.app.models.scheduled_job import ScheduledJob, JobStatus
from fleetrental.app.schemas.ops import (
    DeadLetterResponse,
    DeadLetterListResponse,
    ScheduledJobResponse,
    ScheduledJobListResponse,
    SweepResponse,
    AuditLogResponse
)
from fleetrental.app.services.audit import get_audit_trail
from fleetrental.app.services.device_gateway import DEVICE_COMMAND_TASK, retry_dead_letter
from fleetrental.app.services.runtime import EngineRuntime

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.post("/sweep", response_model=SweepResponse)
async def trigger_sweep(runtime: EngineRuntime = Depends(get_runtime)):
    """
    Run the recovery sweep now: due jobs, overdue requests and device
    command retries.
    """
    results = await runtime.scheduler.sweep()
    if results.get("skipped"):
        return SweepResponse(skipped=True)
    return SweepResponse(results=results)


@router.get("/jobs", response_model=ScheduledJobListResponse)
async def list_scheduled_jobs(
    job_status: Optional[JobStatus] = Query(None, alias="status", description="Filter by job status"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    query = select(ScheduledJob)
    count_query = select(func.count(ScheduledJob.id))
    if job_status is not None:
        query = query.where(ScheduledJob.status == job_status)
        count_query = count_query.where(ScheduledJob.status == job_status)

    total = (await db.execute(count_query)).scalar()
    result = await db.execute(query.order_by(ScheduledJob.fire_at).limit(limit))
    return ScheduledJobListResponse(
        jobs=[ScheduledJobResponse.model_validate(job) for job in result.scalars().all()],
        total=total
    )


@router.get("/dlq", response_model=DeadLetterListResponse)
async def list_dead_letters(
    dlq_status: Optional[DLQStatus] = Query(None, alias="status", description="Filter by DLQ status"),
    vehicle_number: Optional[str] = Query(None, description="Filter by vehicle"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    query = select(DeadLetterQueue)
    count_query = select(func.count(DeadLetterQueue.id))
    if dlq_status is not None:
        query = query.where(DeadLetterQueue.status == dlq_status)
        count_query = count_query.where(DeadLetterQueue.status == dlq_status)
    if vehicle_number is not None:
        query = query.where(DeadLetterQueue.vehicle_number == vehicle_number)
        count_query = count_query.where(DeadLetterQueue.vehicle_number == vehicle_number)

    total = (await db.execute(count_query)).scalar()
    result = await db.execute(query.order_by(DeadLetterQueue.id.desc()).limit(limit))
    return DeadLetterListResponse(
        items=[DeadLetterResponse.model_validate(item) for item in result.scalars().all()],
        total=total
    )


@router.post("/dlq/{dlq_id}/retry", response_model=DeadLetterResponse)
async def retry_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    runtime: EngineRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db)
):
    """Re-send one failed device command right away."""
    result = await db.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
    item = result.scalar_one_or_none()

    if not item:
        raise NotFoundError("DLQ item", dlq_id)
    if item.task_name != DEVICE_COMMAND_TASK:
        raise InvalidStateError(f"No retry handler for task {item.task_name}")
    if item.status == DLQStatus.PROCESSED:
        raise InvalidStateError("DLQ item was already delivered", details={"dlq_id": dlq_id})

    await retry_dead_letter(db, runtime.gateway, item, settings.device_max_retries)
    await db.refresh(item)
    return DeadLetterResponse.model_validate(item)


@router.get("/audit-logs", response_model=list[AuditLogResponse])
async def list_audit_logs(
    request_id: Optional[int] = Query(None),
    vehicle_id: Optional[int] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    logs = await get_audit_trail(db, request_id=request_id, vehicle_id=vehicle_id, action=action, limit=limit)
    return [AuditLogResponse.model_validate(log) for log in logs]
