"""Credit meter: named credit policies on top of the ledger store.

One billable unit costs one credit. Nothing here commits or locks; atomicity
comes from the ledger store and the caller decides the transaction boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models.transaction import PaymentTransaction
from models.user import User
from services import credits as ledger

USAGE_COST = 1
TRIAL_CREDITS = 1


async def grant_purchase(db: AsyncSession, transaction: PaymentTransaction) -> int:
    return await ledger.increment(
        transaction.user_id,
        db,
        credits=int(transaction.credits_granted),
        entry_type="purchase",
        purchased=True,
        reason=f"{transaction.kind} purchase",
        reference_type="transaction",
        reference_id=transaction.id,
    )


async def reverse_purchase(db: AsyncSession, transaction: PaymentTransaction) -> int:
    """Take back a refunded purchase. Returns the credits actually removed."""
    return await ledger.clawback(
        transaction.user_id,
        db,
        credits=int(transaction.credits_granted),
        reason=f"{transaction.kind} refund",
        reference_type="transaction",
        reference_id=transaction.id,
    )


async def grant_trial(db: AsyncSession, account_id: str) -> bool:
    """Grant the one-time trial credit. False when the account already had it."""
    result = await db.execute(
        update(User)
        .where(User.id == account_id, User.trial_granted_at.is_(None))
        .values(trial_granted_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False
    await ledger.increment(
        account_id,
        db,
        credits=TRIAL_CREDITS,
        entry_type="trial_grant",
        purchased=False,
        reason="Free trial credit",
    )
    return True


async def debit_for_usage(db: AsyncSession, account_id: str, reading_id: Optional[str] = None) -> bool:
    return await ledger.decrement(
        account_id,
        db,
        credits=USAGE_COST,
        entry_type="usage_debit",
        reason="Reading",
        reference_type="reading" if reading_id else None,
        reference_id=reading_id,
    )


async def refund_usage(db: AsyncSession, account_id: str, reading_id: Optional[str] = None) -> int:
    """Undo a usage debit whose billable action never started."""
    return await ledger.increment(
        account_id,
        db,
        credits=USAGE_COST,
        entry_type="usage_refund",
        purchased=False,
        reason="Reading could not be started",
        reference_type="reading" if reading_id else None,
        reference_id=reading_id,
    )


async def admin_grant(db: AsyncSession, account_id: str, credits: int, admin_id: str) -> int:
    return await ledger.increment(
        account_id,
        db,
        credits=credits,
        entry_type="admin_grant",
        purchased=False,
        reason=f"Granted by admin {admin_id}",
        reference_type="admin",
        reference_id=admin_id,
    )
