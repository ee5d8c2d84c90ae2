"""Persist operator-facing error records."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from database import async_session_maker
from models.error_log import ErrorLog

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high", "critical")


async def record_error(
    error_type: str,
    message: str,
    *,
    severity: str = "medium",
    user_id: Optional[str] = None,
    endpoint: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Write an error log row in its own session.

    Runs outside the caller's transaction so a rollback there cannot drop the
    record. If the write fails the record goes to the process log instead.
    """
    if severity not in SEVERITIES:
        severity = "medium"
    try:
        async with async_session_maker() as db:
            db.add(
                ErrorLog(
                    user_id=user_id,
                    error_type=error_type,
                    error_message=str(message)[:4000],
                    endpoint=endpoint,
                    severity=severity,
                    context_json=context,
                )
            )
            await db.commit()
    except Exception as exc:
        logger.error(
            "Failed to persist error log %s (%s): %s | original: %s",
            error_type,
            severity,
            exc,
            message,
        )
