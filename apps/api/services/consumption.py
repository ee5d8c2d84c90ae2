"""Service consumption gate: pay one credit, then start one reading.

The debit and the reading row commit together, so a credit is never spent
without a unit of work behind it. Only a failed queue handoff, which happens
after that commit, gives the credit back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Union
import uuid

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.reading import Reading
from models.user import User
from services import credit_meter
from services.accounts import get_account
from services.billing_errors import AccountNotFoundError, UsageHandoffError, UsageUnitCreationError
from services.reading_queue import enqueue_reading_job

logger = logging.getLogger(__name__)

# Entry types that put spendable credits on an account besides the trial grant.
FUNDED_ENTRY_TYPES = ("purchase", "admin_grant")


@dataclass(frozen=True)
class CreditConsumed:
    usage_unit_id: str
    reading: Reading


@dataclass(frozen=True)
class InsufficientCredits:
    account_id: str


ConsumeResult = Union[CreditConsumed, InsufficientCredits]


async def _spending_trial_credit(db: AsyncSession, account: User) -> bool:
    """True when the only credit the account holds is its trial grant."""
    if not account.is_guest or account.trial_granted_at is None:
        return False
    if int(account.available_credits or 0) != credit_meter.TRIAL_CREDITS:
        return False
    result = await db.execute(
        select(func.count(CreditLedger.id)).where(
            CreditLedger.user_id == account.id,
            CreditLedger.entry_type.in_(FUNDED_ENTRY_TYPES),
        )
    )
    return not result.scalar_one()


async def consume_credit(
    db: AsyncSession,
    account_id: str,
    *,
    reading_type: str,
    question: str,
    locale: str,
    is_voice_session: bool = False,
) -> ConsumeResult:
    account = await get_account(db, account_id)
    if account is None:
        raise AccountNotFoundError(f"Account {account_id} not found.")
    spending_trial = await _spending_trial_credit(db, account)

    reading_id = str(uuid.uuid4())
    if not await credit_meter.debit_for_usage(db, account_id, reading_id):
        await db.rollback()
        return InsufficientCredits(account_id=account_id)

    reading = Reading(
        id=reading_id,
        user_id=account_id,
        reading_type=reading_type,
        question=question,
        locale=locale,
        is_voice_session=is_voice_session,
        status="pending",
        credits_used=credit_meter.USAGE_COST,
        was_free_trial=spending_trial,
    )
    try:
        db.add(reading)
        await db.execute(
            update(User)
            .where(User.id == account_id)
            .values(last_reading_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception as exc:
        # Rolls back the debit together with the reading.
        await db.rollback()
        logger.exception("Could not persist reading for %s", account_id)
        raise UsageUnitCreationError("Failed to create reading.") from exc

    try:
        job = enqueue_reading_job(reading_id)
    except Exception as exc:
        logger.error("Reading %s could not be queued: %s; refunding debit", reading_id, exc)
        result = await db.execute(
            update(Reading)
            .where(Reading.id == reading_id, Reading.status == "pending")
            .values(
                status="failed",
                error_message="Reading queue unavailable; credit returned.",
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await credit_meter.refund_usage(db, account_id, reading_id)
        await db.commit()
        raise UsageHandoffError("Reading queue unavailable.") from exc

    reading.queue_job_id = job.id
    await db.commit()
    await db.refresh(reading)
    return CreditConsumed(usage_unit_id=reading.id, reading=reading)
