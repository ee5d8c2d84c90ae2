"""Reading generation job and its completion contract.

A reading reports back exactly once: completion and failure are both
conditional updates on a not-yet-finished status, so whichever lands first
wins and later reports are ignored.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.reading import Reading
from services.error_log import record_error
from services.reading_generator import ReadingGenerator, get_reading_generator, store_audio

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "processing")


async def claim_usage_unit(db: AsyncSession, reading_id: str) -> bool:
    result = await db.execute(
        update(Reading)
        .where(Reading.id == reading_id, Reading.status == "pending")
        .values(status="processing")
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def complete_usage_unit(
    db: AsyncSession,
    reading_id: str,
    response_text: str,
    *,
    audio_url: Optional[str] = None,
    audio_error: Optional[str] = None,
) -> bool:
    result = await db.execute(
        update(Reading)
        .where(Reading.id == reading_id, Reading.status.in_(OPEN_STATUSES))
        .values(
            status="completed",
            response_text=response_text,
            response_audio_url=audio_url,
            audio_error=audio_error,
            error_message=None,
            completed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    applied = result.rowcount == 1
    if not applied:
        logger.warning("Ignoring completion for reading %s: already finished", reading_id)
    return applied


async def fail_usage_unit(db: AsyncSession, reading_id: str, error_message: str) -> bool:
    result = await db.execute(
        update(Reading)
        .where(Reading.id == reading_id, Reading.status.in_(OPEN_STATUSES))
        .values(
            status="failed",
            error_message=(error_message or "Reading generation failed")[:1000],
            completed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    applied = result.rowcount == 1
    if not applied:
        logger.warning("Ignoring failure report for reading %s: already finished", reading_id)
    return applied


async def process_reading_job_async(reading_id: str, generator: Optional[ReadingGenerator] = None) -> None:
    """Generate a reading; narration audio is optional and never fails the reading."""
    generator = generator or get_reading_generator()
    async with async_session_maker() as db:
        result = await db.execute(select(Reading).where(Reading.id == reading_id))
        reading = result.scalar_one_or_none()
        if not reading:
            logger.warning("Reading %s not found", reading_id)
            return
        if not await claim_usage_unit(db, reading_id):
            logger.info("Reading %s already claimed (status %s)", reading_id, reading.status)
            return

        try:
            response_text = await generator.generate_text(reading.reading_type, reading.question, reading.locale)
        except Exception as exc:
            logger.exception("Reading %s generation failed: %s", reading_id, exc)
            await fail_usage_unit(db, reading_id, str(exc))
            await record_error(
                "ai_reading_generation_error",
                str(exc),
                severity="high",
                user_id=reading.user_id,
                endpoint=f"reading_pipeline/{reading_id}",
            )
            return

        audio_url: Optional[str] = None
        audio_error: Optional[str] = None
        if settings.ENABLE_TTS and generator.audio_enabled:
            try:
                audio = await generator.synthesize_audio(response_text)
                audio_url = await asyncio.to_thread(store_audio, reading_id, audio)
            except Exception as exc:
                audio_error = str(exc)[:500] or "Audio synthesis failed"
                logger.warning("Audio generation failed for reading %s (non-fatal): %s", reading_id, exc)
                await record_error(
                    "tts_generation_error",
                    audio_error,
                    severity="medium",
                    user_id=reading.user_id,
                    endpoint=f"reading_pipeline/{reading_id}/tts",
                )

        if await complete_usage_unit(
            db,
            reading_id,
            response_text,
            audio_url=audio_url,
            audio_error=audio_error,
        ):
            logger.info("Reading %s completed", reading_id)


def process_reading_job(reading_id: str) -> None:
    """RQ worker entrypoint for reading jobs."""
    asyncio.run(process_reading_job_async(reading_id))
