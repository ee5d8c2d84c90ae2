"""Ledger store: atomic balance mutations plus the credit journal.

Every mutation is a single conditional UPDATE against the account row, so
concurrent requests are serialized by the database rather than by any
in-process lock. Functions here only flush; the caller owns the commit so
ledger effects land in the same database transaction as whatever caused them.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.user import User
from services.billing_errors import AccountNotFoundError
from services.pricing import PRICING

logger = logging.getLogger(__name__)

CLAWBACK_MAX_ATTEMPTS = 5


def _require_positive(credits: int) -> int:
    value = int(credits)
    if value <= 0:
        raise ValueError("credits must be greater than 0")
    return value


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.available_credits).where(User.id == user_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise AccountNotFoundError(f"Account {user_id} not found.")
    return int(balance)


async def _account_exists(user_id: str, db: AsyncSession) -> bool:
    result = await db.execute(select(User.id).where(User.id == user_id))
    return result.scalar_one_or_none() is not None


async def _insert_entry(
    user_id: str,
    db: AsyncSession,
    *,
    entry_type: str,
    delta_credits: int,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> CreditLedger:
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        entry_type=entry_type,
        delta_credits=int(delta_credits),
        balance_after=await get_credit_balance(user_id, db),
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    db.add(entry)
    await db.flush()
    return entry


async def increment(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    entry_type: str,
    purchased: bool = True,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> int:
    """Add credits in one atomic UPDATE and return the new balance.

    `purchased` also advances the audit-only total_credits_purchased counter;
    restorations (usage refunds, trial and admin grants) leave it untouched.
    """
    grant = _require_positive(credits)
    values: Dict[str, Any] = {"available_credits": User.available_credits + grant}
    if purchased:
        values["total_credits_purchased"] = User.total_credits_purchased + grant

    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise AccountNotFoundError(f"Account {user_id} not found.")

    entry = await _insert_entry(
        user_id,
        db,
        entry_type=entry_type,
        delta_credits=grant,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return int(entry.balance_after)


async def decrement(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    entry_type: str,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> bool:
    """Remove credits only if the balance covers them. Returns False otherwise."""
    debit = _require_positive(credits)
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.available_credits >= debit)
        .values(available_credits=User.available_credits - debit)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        if not await _account_exists(user_id, db):
            raise AccountNotFoundError(f"Account {user_id} not found.")
        return False

    await _insert_entry(
        user_id,
        db,
        entry_type=entry_type,
        delta_credits=-debit,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return True


async def clawback(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> int:
    """Remove up to `credits`, flooring the balance at zero.

    Compare-and-swap on the observed balance; returns how many credits were
    actually removed, which is less than requested when they were spent.
    """
    requested = _require_positive(credits)
    for _ in range(CLAWBACK_MAX_ATTEMPTS):
        observed = await get_credit_balance(user_id, db)
        removable = min(observed, requested)
        if removable == 0:
            return 0
        result = await db.execute(
            update(User)
            .where(User.id == user_id, User.available_credits == observed)
            .values(available_credits=observed - removable)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await _insert_entry(
                user_id,
                db,
                entry_type="refund_clawback",
                delta_credits=-removable,
                reason=reason,
                reference_type=reference_type,
                reference_id=reference_id,
            )
            return removable
        logger.info("Clawback for %s lost a balance race, retrying", user_id)

    logger.error("Clawback for %s gave up after %s contended attempts", user_id, CLAWBACK_MAX_ATTEMPTS)
    return 0


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise AccountNotFoundError(f"Account {user_id} not found.")
    await db.refresh(user)

    entries_result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = entries_result.scalars().all()
    return {
        "balance": int(user.available_credits or 0),
        "total_credits_purchased": int(user.total_credits_purchased or 0),
        "subscription_state": user.subscription_state or "none",
        "subscription_renews_at": (
            user.subscription_renews_at.isoformat() if user.subscription_renews_at else None
        ),
        "pricing": {
            kind: {"amount": price.amount, "currency": price.currency, "credits": price.credits}
            for kind, price in PRICING.items()
        },
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
