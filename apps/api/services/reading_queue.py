"""Durable reading job queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy import update

from config import settings
from database import async_session_maker
from models.reading import Reading


READING_QUEUE_NAME = "reading_jobs"
IN_PROGRESS_STATUSES = ("pending", "processing")


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_reading_queue() -> Queue:
    """Return the configured reading generation queue."""
    return Queue(
        name=READING_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_reading_job(reading_id: str) -> Job:
    """Hand a paid reading to the generation pipeline."""
    queue = get_reading_queue()
    return queue.enqueue(
        "services.reading_pipeline.process_reading_job",
        reading_id,
        job_id=f"reading:{reading_id}",
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )


async def recover_stalled_readings(max_age_minutes: int = 30) -> int:
    """Mark readings that never reported back as failed after restarts/worker loss."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            update(Reading)
            .where(
                Reading.status.in_(IN_PROGRESS_STATUSES),
                Reading.created_at < cutoff,
            )
            .values(
                status="failed",
                error_message="Reading generation was interrupted before it reported back.",
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return int(result.rowcount or 0)
