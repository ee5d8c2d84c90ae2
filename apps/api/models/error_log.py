"""Persisted operational error log."""

from sqlalchemy import Boolean, Column, DateTime, JSON, String, Text
from sqlalchemy.sql import func
import uuid

from database import Base


class ErrorLog(Base):
    """Operator-facing error record (reconciliation gaps, gateway faults, ...)."""

    __tablename__ = "error_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    error_type = Column(String, nullable=False, index=True)
    error_message = Column(Text, nullable=False)
    endpoint = Column(String, nullable=True)
    severity = Column(String, nullable=False, default="medium")  # low, medium, high, critical
    context_json = Column(JSON, nullable=True)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
