"""Transaction record: creation and guarded status transitions."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Dict, FrozenSet, List, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.transaction import PaymentTransaction
from services.billing_errors import (
    AlreadyAttachedError,
    InvalidTransitionError,
    TransactionNotFoundError,
)
from services.pricing import price_for

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"completed", "failed"}),
    "completed": frozenset({"refunded"}),
    "failed": frozenset(),
    "refunded": frozenset(),
}
STAMPS_COMPLETED_AT = frozenset({"completed", "refunded"})


def is_allowed(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


async def create_transaction(db: AsyncSession, account_id: str, kind: str) -> PaymentTransaction:
    """Insert a pending transaction priced from the fixed table and commit it."""
    price = price_for(kind)
    transaction = PaymentTransaction(
        id=str(uuid.uuid4()),
        user_id=account_id,
        kind=price.kind,
        status="pending",
        amount=price.amount,
        currency=price.currency,
        credits_granted=price.credits,
        description=price.description,
    )
    db.add(transaction)
    await db.commit()
    await db.refresh(transaction)
    logger.info("Created %s transaction %s for %s", kind, transaction.id, account_id)
    return transaction


async def get_transaction(
    db: AsyncSession,
    transaction_id: str,
    account_id: Optional[str] = None,
) -> Optional[PaymentTransaction]:
    query = select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
    if account_id is not None:
        query = query.where(PaymentTransaction.user_id == account_id)
    result = await db.execute(query)
    transaction = result.scalar_one_or_none()
    if transaction is not None:
        await db.refresh(transaction)
    return transaction


async def list_transactions(db: AsyncSession, account_id: str, limit: int = 50) -> List[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.user_id == account_id)
        .order_by(PaymentTransaction.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _current_status(db: AsyncSession, transaction_id: str) -> str:
    result = await db.execute(select(PaymentTransaction.status).where(PaymentTransaction.id == transaction_id))
    status = result.scalar_one_or_none()
    if status is None:
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found.")
    return status


async def attach_external_id(
    db: AsyncSession,
    transaction_id: str,
    external_payment_id: str,
    payment_url: Optional[str] = None,
    payment_method: str = "payten",
) -> PaymentTransaction:
    """Record the gateway id once. Re-attaching the same id is a no-op."""
    result = await db.execute(
        update(PaymentTransaction)
        .where(
            PaymentTransaction.id == transaction_id,
            PaymentTransaction.external_payment_id.is_(None),
        )
        .values(
            external_payment_id=external_payment_id,
            payment_url=payment_url,
            payment_method=payment_method,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        existing = await db.execute(
            select(PaymentTransaction.external_payment_id).where(PaymentTransaction.id == transaction_id)
        )
        row = existing.first()
        if row is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found.")
        if row[0] != external_payment_id:
            raise AlreadyAttachedError(
                f"Transaction {transaction_id} is already attached to payment {row[0]}."
            )
    await db.flush()
    transaction = await get_transaction(db, transaction_id)
    return transaction


async def transition_to(db: AsyncSession, transaction_id: str, new_status: str) -> PaymentTransaction:
    """Move a transaction along the settlement state machine.

    The UPDATE is conditioned on the status that was validated, so two
    concurrent callers cannot both win the same edge. Flush only.
    """
    current = await _current_status(db, transaction_id)
    if not is_allowed(current, new_status):
        raise InvalidTransitionError(transaction_id, current, new_status)

    values = {"status": new_status}
    if new_status in STAMPS_COMPLETED_AT:
        values["completed_at"] = datetime.now(timezone.utc)

    result = await db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == transaction_id, PaymentTransaction.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidTransitionError(transaction_id, await _current_status(db, transaction_id), new_status)

    await db.flush()
    return await get_transaction(db, transaction_id)
