"""
Driver and operations Pydantic schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Any, Dict, Optional, List

from fleetrental.app.models.dlq import DLQStatus
from fleetrental.app.models.scheduled_job import JobStatus


class DriverStatusUpdate(BaseModel):
    is_active: bool


class DriverResponse(BaseModel):
    id: int
    name: str
    phone: str
    location_id: Optional[int]
    is_active: bool

    class Config:
        from_attributes = True


class DeadLetterResponse(BaseModel):
    id: int
    task_name: str
    vehicle_number: Optional[str]
    error_message: Optional[str]
    payload: Optional[Dict[str, Any]]
    status: DLQStatus
    retry_count: int
    created_at: datetime
    last_retry_at: Optional[datetime]

    class Config:
        from_attributes = True


class DeadLetterListResponse(BaseModel):
    items: List[DeadLetterResponse]
    total: int


class ScheduledJobResponse(BaseModel):
    id: int
    key: str
    callback: str
    payload: Optional[Dict[str, Any]]
    fire_at: datetime
    status: JobStatus
    attempts: int
    last_error: Optional[str]
    fired_at: Optional[datetime]

    class Config:
        from_attributes = True


class ScheduledJobListResponse(BaseModel):
    jobs: List[ScheduledJobResponse]
    total: int


class SweepResponse(BaseModel):
    """Per-step counts of one recovery sweep."""
    skipped: bool = False
    results: Dict[str, Any] = {}


class AuditLogResponse(BaseModel):
    id: int
    actor: Optional[str]
    action: str
    driver_id: Optional[int]
    vehicle_id: Optional[int]
    request_id: Optional[int]
    meta_data: Optional[Dict[str, Any]]
    timestamp: datetime

    class Config:
        from_attributes = True
