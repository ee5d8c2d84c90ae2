"""Administrator operations on accounts."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_admin
from routers.errors import http_error
from services import credit_meter
from services.billing_errors import AccountNotFoundError

router = APIRouter()
logger = logging.getLogger(__name__)


class AddCreditsRequest(BaseModel):
    credits: int = Field(ge=1, le=10000)


@router.post("/accounts/{account_id}/credits")
async def add_credits(
    account_id: str,
    request: AddCreditsRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        balance_after = await credit_meter.admin_grant(db, account_id, request.credits, admin.user_id)
        await db.commit()
    except AccountNotFoundError as exc:
        await db.rollback()
        raise http_error(exc) from exc

    logger.info("Admin %s granted %s credits to %s", admin.user_id, request.credits, account_id)
    return {
        "ok": True,
        "account_id": account_id,
        "credits_added": request.credits,
        "balance_after": balance_after,
    }
