"""
Payment Pydantic schemas.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional

from fleetrental.app.models.enums import PaymentStatus
from fleetrental.app.schemas.vehicle_request import to_naive_utc


class PaymentConfirmation(BaseModel):
    """Payment result as delivered by the payment collaborator."""
    order_id: str = Field(..., min_length=1, max_length=100)
    amount: float = Field(..., gt=0)
    status: PaymentStatus
    transaction_id: Optional[str] = Field(None, max_length=100)
    paid_at: Optional[datetime] = None

    @field_validator("paid_at")
    @classmethod
    def normalize_paid_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None


class PaymentResponse(BaseModel):
    id: int
    order_id: str
    driver_id: int
    amount: float
    status: PaymentStatus
    transaction_id: Optional[str]
    paid_at: Optional[datetime]

    class Config:
        from_attributes = True
