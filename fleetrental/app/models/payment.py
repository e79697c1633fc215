"""
Payment database model.

Results delivered by the payment collaborator. Only CONFIRMED payments are
attached to a vehicle request.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from fleetrental.app.db.session import Base
from fleetrental.app.models.enums import PaymentStatus


class Payment(Base):
    """Payment reference (order id + amount). Immutable once attached."""
    __tablename__ = "payments"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(100), unique=True, nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey('drivers.id'), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False)
    transaction_id = Column(String(100), unique=True, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<Payment(id={self.id}, order_id='{self.order_id}', status='{self.status.value}')>"
