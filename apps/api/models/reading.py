"""Reading model: one billable content-generation invocation."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Reading(Base):
    """Usage unit that consumed exactly one credit."""

    __tablename__ = "readings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    reading_type = Column(String, nullable=False)  # coffee, tarot
    question = Column(Text, nullable=False)
    locale = Column(String, nullable=False, default="en")
    is_voice_session = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, processing, completed, failed
    credits_used = Column(Integer, nullable=False, default=1)
    was_free_trial = Column(Boolean, nullable=False, default=False)
    queue_job_id = Column(String, nullable=True)
    response_text = Column(Text, nullable=True)
    response_audio_url = Column(String, nullable=True)
    audio_error = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="readings")
