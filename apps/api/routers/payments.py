"""Payment router: purchase creation, client verification and gateway webhooks."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.transaction import PaymentTransaction
from routers.auth_scope import AuthContext, get_auth_context
from routers.errors import http_error
from routers.rate_limit import rate_limit
from services.accounts import ensure_account
from services.billing_errors import (
    BillingError,
    GatewayUnavailableError,
    InvalidSignatureError,
    UnknownTransactionError,
)
from services.error_log import record_error
from services.payments.gateway import BasePaymentGateway, get_payment_gateway
from services.purchases import create_purchase
from services.settlement import SettlementOutcome, handle_webhook_event, poll_verify
from services.transactions import list_transactions

router = APIRouter()


class CreatePaymentRequest(BaseModel):
    kind: str = Field(min_length=1, max_length=32)
    locale: Optional[Literal["en", "tr", "sr"]] = None
    transaction_id: Optional[str] = None


class CreatePaymentResponse(BaseModel):
    transaction_id: str
    redirect_url: str
    resumed: bool = False


class VerifyPaymentRequest(BaseModel):
    transaction_id: str = Field(min_length=1)


def _serialize_transaction(transaction: PaymentTransaction) -> dict:
    return {
        "id": transaction.id,
        "kind": transaction.kind,
        "status": transaction.status,
        "amount": transaction.amount,
        "currency": transaction.currency,
        "credits_granted": transaction.credits_granted,
        "description": transaction.description,
        "external_payment_id": transaction.external_payment_id,
        "created_at": transaction.created_at.isoformat() if transaction.created_at else None,
        "completed_at": transaction.completed_at.isoformat() if transaction.completed_at else None,
    }


def payment_gateway() -> BasePaymentGateway:
    """Resolve the configured gateway or answer 503."""
    try:
        return get_payment_gateway()
    except GatewayUnavailableError as exc:
        raise http_error(exc) from exc


@router.post("/create", response_model=CreatePaymentResponse)
async def create_payment(
    request: CreatePaymentRequest,
    _rate_limit: None = Depends(rate_limit("payment_create", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(payment_gateway),
):
    await ensure_account(db, auth.user_id, auth.email)
    try:
        result = await create_purchase(
            db,
            gateway,
            auth.user_id,
            request.kind,
            locale=request.locale or settings.DEFAULT_LOCALE,
            transaction_id=request.transaction_id,
        )
    except BillingError as exc:
        raise http_error(exc) from exc

    return CreatePaymentResponse(
        transaction_id=result.transaction_id,
        redirect_url=result.redirect_url,
        resumed=result.resumed,
    )


@router.post("/verify")
async def verify_payment(
    request: VerifyPaymentRequest,
    _rate_limit: None = Depends(rate_limit("payment_verify", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(payment_gateway),
):
    """Force reconciliation from the success page when the webhook is late."""
    try:
        outcome = await poll_verify(db, gateway, request.transaction_id, auth.user_id)
    except BillingError as exc:
        raise http_error(exc) from exc

    return {
        "transaction": _serialize_transaction(outcome.transaction),
        "applied": outcome.applied,
        "reason": outcome.reason,
    }


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(payment_gateway),
):
    """Gateway notification endpoint.

    Authenticated deliveries are always acknowledged, even when they change
    nothing, so the gateway does not keep retrying them.
    """
    raw_body = await request.body()
    signature = request.headers.get(settings.PAYMENT_WEBHOOK_SIGNATURE_HEADER, "")
    try:
        outcome: SettlementOutcome = await handle_webhook_event(db, gateway, raw_body, signature)
    except InvalidSignatureError as exc:
        await record_error(
            "webhook_invalid_signature",
            str(exc),
            severity="high",
            endpoint="/payment/webhook",
            context={"client": request.client.host if request.client else None},
        )
        raise http_error(exc) from exc
    except UnknownTransactionError as exc:
        return {"received": True, "applied": False, "reason": exc.code}
    except BillingError as exc:
        raise http_error(exc) from exc

    return {"received": True, "applied": outcome.applied, "reason": outcome.reason}


@router.get("/transactions")
async def transaction_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    transactions = await list_transactions(db, auth.user_id)
    return {"transactions": [_serialize_transaction(item) for item in transactions]}
