"""
Audit logging service for allocation history.

Entries are added to the caller's session and committed together with the
state change they describe.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from fleetrental.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    REQUEST_CREATED = "REQUEST_CREATED"
    REQUEST_APPROVED = "REQUEST_APPROVED"
    REQUEST_REJECTED = "REQUEST_REJECTED"

    VEHICLE_CREATED = "VEHICLE_CREATED"
    VEHICLE_UPDATED = "VEHICLE_UPDATED"
    VEHICLE_DELETED = "VEHICLE_DELETED"
    VEHICLE_ALLOCATED = "VEHICLE_ALLOCATED"
    SPARE_ALLOCATED = "SPARE_ALLOCATED"
    VEHICLE_DEACTIVATED = "VEHICLE_DEACTIVATED"
    VEHICLE_ENABLED = "VEHICLE_ENABLED"

    PAYMENT_ATTACHED = "PAYMENT_ATTACHED"
    DRIVER_STATUS_CHANGED = "DRIVER_STATUS_CHANGED"


SYSTEM_ACTOR = "scheduler"


def record_event(
    db: AsyncSession,
    action: str,
    actor: Optional[str] = None,
    driver_id: Optional[int] = None,
    vehicle_id: Optional[int] = None,
    request_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Stage an audit entry in the current transaction.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor: Who performed it (None for anonymous callers)
        driver_id: Affected driver
        vehicle_id: Affected vehicle
        request_id: Affected vehicle request
        metadata: Additional context as JSON

    Returns:
        Pending AuditLog instance
    """
    audit_log = AuditLog(
        actor=actor,
        action=action,
        driver_id=driver_id,
        vehicle_id=vehicle_id,
        request_id=request_id,
        meta_data=metadata
    )
    db.add(audit_log)
    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    request_id: Optional[int] = None,
    vehicle_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.id))

    if request_id:
        query = query.where(AuditLog.request_id == request_id)

    if vehicle_id:
        query = query.where(AuditLog.vehicle_id == vehicle_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
