"""Account provisioning helpers."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services import credit_meter

logger = logging.getLogger(__name__)


async def get_account(db: AsyncSession, account_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == account_id))
    return result.scalar_one_or_none()


async def ensure_account(db: AsyncSession, account_id: str, email: Optional[str] = None) -> User:
    """Return the account, creating an empty one on first sight."""
    user = await get_account(db, account_id)
    if user:
        return user

    user = User(
        id=account_id,
        email=email or f"{account_id}@local.invalid",
        available_credits=0,
        total_credits_purchased=0,
        subscription_state="none",
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        # Another request provisioned the same account first.
        await db.rollback()
        user = await get_account(db, account_id)
        if user is None:
            raise
        return user
    await db.refresh(user)
    return user


async def provision_account(
    db: AsyncSession,
    account_id: str,
    *,
    guest: bool,
    email: Optional[str] = None,
) -> User:
    """Ensure the account exists; guest accounts receive the trial credit once."""
    user = await ensure_account(db, account_id, email)
    if guest:
        if not user.is_guest:
            user.is_guest = True
        granted = await credit_meter.grant_trial(db, account_id)
        await db.commit()
        if granted:
            logger.info("Granted trial credit to guest account %s", account_id)
        await db.refresh(user)
    return user
