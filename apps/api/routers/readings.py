"""Reading router: spend one credit to start a reading, then poll its status."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.reading import Reading
from routers.auth_scope import AuthContext, get_auth_context
from routers.errors import http_error
from routers.rate_limit import rate_limit
from services.accounts import ensure_account
from services.billing_errors import BillingError
from services.consumption import InsufficientCredits, consume_credit
from services.error_log import record_error

router = APIRouter()


class CreateReadingRequest(BaseModel):
    reading_type: Literal["coffee", "tarot"]
    question: str = Field(min_length=1)
    locale: Literal["en", "tr", "sr"] = "en"
    is_voice_session: bool = False


def _serialize_reading(reading: Reading) -> dict:
    return {
        "id": reading.id,
        "status": reading.status,
        "reading_type": reading.reading_type,
        "locale": reading.locale,
        "credits_used": reading.credits_used,
        "was_free_trial": bool(reading.was_free_trial),
        "response_text": reading.response_text,
        "response_audio_url": reading.response_audio_url,
        "audio_error": reading.audio_error,
        "error_message": reading.error_message,
        "created_at": reading.created_at.isoformat() if reading.created_at else None,
        "completed_at": reading.completed_at.isoformat() if reading.completed_at else None,
    }


@router.post("")
async def create_reading(
    request: CreateReadingRequest,
    _rate_limit: None = Depends(rate_limit("reading_create", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    question = request.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Question is required.")
    if not request.is_voice_session and len(question) > settings.READING_QUESTION_MAX_CHARS:
        raise HTTPException(status_code=400, detail="Question too long.")

    await ensure_account(db, auth.user_id, auth.email)
    try:
        result = await consume_credit(
            db,
            auth.user_id,
            reading_type=request.reading_type,
            question=question,
            locale=request.locale,
            is_voice_session=request.is_voice_session,
        )
    except BillingError as exc:
        await record_error(
            "reading_creation_error",
            str(exc),
            severity="high",
            user_id=auth.user_id,
            endpoint="/readings",
        )
        raise http_error(exc) from exc

    if isinstance(result, InsufficientCredits):
        raise HTTPException(
            status_code=402,
            detail={
                "code": "insufficient_credits",
                "message": "Insufficient credits. Purchase more credits to continue.",
            },
        )

    return {
        "usage_unit_id": result.usage_unit_id,
        "reading": _serialize_reading(result.reading),
    }


@router.get("/{reading_id}")
async def get_reading(
    reading_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Reading).where(Reading.id == reading_id, Reading.user_id == auth.user_id)
    )
    reading = result.scalar_one_or_none()
    if reading is None:
        raise HTTPException(status_code=404, detail="Reading not found.")
    return _serialize_reading(reading)
