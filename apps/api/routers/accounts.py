"""Account provisioning router, called by the identity provider after sign-up."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import provision_account

router = APIRouter()


@router.post("/provision")
async def provision(
    _rate_limit: None = Depends(rate_limit("account_provision", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    # Guest status comes from the identity token only; the trial credit follows it.
    user = await provision_account(db, auth.user_id, guest=auth.guest, email=auth.email)
    return {
        "user_id": user.id,
        "is_guest": bool(user.is_guest),
        "available_credits": int(user.available_credits or 0),
        "trial_granted": user.trial_granted_at is not None,
    }
