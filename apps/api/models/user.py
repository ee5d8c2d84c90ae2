"""Account model: one per authenticated user."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """User account holding the consumable credit balance."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("available_credits >= 0", name="ck_users_available_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    locale = Column(String, nullable=False, default="en")

    # Credit system
    available_credits = Column(Integer, nullable=False, default=0)
    total_credits_purchased = Column(Integer, nullable=False, default=0)
    trial_granted_at = Column(DateTime(timezone=True), nullable=True)

    is_guest = Column(Boolean, nullable=False, default=False)
    is_admin = Column(Boolean, nullable=False, default=False)

    subscription_state = Column(String, nullable=False, default="none")  # none, active, cancelled, expired, paused
    subscription_renews_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    last_reading_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    credit_entries = relationship("CreditLedger", back_populates="user", cascade="all, delete-orphan")
    transactions = relationship("PaymentTransaction", back_populates="user")
    subscriptions = relationship("Subscription", back_populates="user")
    readings = relationship("Reading", back_populates="user")
