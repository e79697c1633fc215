"""
Payment API Endpoints.

Receives payment results from the payment collaborator.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from fleetrental.app.db.session import get_db
from fleetrental.app.core.dependencies import get_engine, get_actor
from fleetrental.app.schemas.payment import PaymentConfirmation, PaymentResponse
from fleetrental.app.services.allocation import AllocationEngine

router = APIRouter(prefix="/vehicle-requests", tags=["Payments"])


@router.post("/{request_id}/payment", response_model=PaymentResponse)
async def confirm_payment(
    confirmation: PaymentConfirmation,
    request_id: int = Path(..., description="Vehicle request ID"),
    actor: Optional[str] = Depends(get_actor),
    engine: AllocationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Attach a CONFIRMED payment to the request.

    Non-confirmed results are stored but rejected with 400.
    """
    payment = await engine.confirm_payment(
        db,
        request_id,
        order_id=confirmation.order_id,
        amount=confirmation.amount,
        status=confirmation.status,
        transaction_id=confirmation.transaction_id,
        paid_at=confirmation.paid_at,
        actor=actor
    )
    return PaymentResponse.model_validate(payment)
