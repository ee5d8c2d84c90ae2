"""Billing and credits router."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.accounts import ensure_account
from services.credits import get_credit_summary

router = APIRouter()


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(db, auth.user_id, auth.email)
    return await get_credit_summary(auth.user_id, db)
