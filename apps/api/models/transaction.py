"""Payment transaction model: one row per purchase attempt."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class PaymentTransaction(Base):
    """Purchase attempt and its settlement lifecycle. Never deleted."""

    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)  # single, subscription, topup
    status = Column(String, nullable=False, default="pending", index=True)  # pending, completed, failed, refunded
    amount = Column(Integer, nullable=False)  # minor currency units
    currency = Column(String, nullable=False, default="USD")
    credits_granted = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    external_payment_id = Column(String, nullable=True, unique=True, index=True)
    payment_url = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="transactions")
