"""Purchase initiation: durable transaction first, gateway session second."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.transaction import PaymentTransaction
from services.billing_errors import (
    AlreadyAttachedError,
    GatewayUnavailableError,
    InvalidKindError,
    TransactionNotFoundError,
    TransactionNotResumableError,
)
from services.error_log import record_error
from services.payments.gateway import BasePaymentGateway
from services.payments.types import PaymentSessionRequest
from services.transactions import attach_external_id, create_transaction, get_transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseResult:
    transaction_id: str
    external_payment_id: str
    redirect_url: str
    resumed: bool = False


def _session_request(transaction: PaymentTransaction, locale: str) -> PaymentSessionRequest:
    app_url = settings.APP_URL.rstrip("/")
    return PaymentSessionRequest(
        amount=int(transaction.amount),
        currency=transaction.currency,
        order_id=transaction.id,
        customer_id=transaction.user_id,
        return_url=f"{app_url}/{locale}/payment/success?transaction_id={transaction.id}",
        cancel_url=f"{app_url}/{locale}/payment/cancel?transaction_id={transaction.id}",
        description=transaction.description or transaction.kind,
        metadata={
            "user_id": transaction.user_id,
            "transaction_id": transaction.id,
            "payment_type": transaction.kind,
            "credits": str(transaction.credits_granted),
        },
    )


async def _resumable_transaction(
    db: AsyncSession,
    account_id: str,
    kind: str,
    transaction_id: str,
) -> PaymentTransaction:
    transaction = await get_transaction(db, transaction_id, account_id)
    if transaction is None:
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found.")
    if transaction.kind != kind:
        raise InvalidKindError(f"Transaction {transaction_id} is a {transaction.kind} purchase, not {kind}.")
    if transaction.status != "pending":
        raise TransactionNotResumableError(f"Transaction {transaction_id} is already {transaction.status}.")
    return transaction


async def create_purchase(
    db: AsyncSession,
    gateway: BasePaymentGateway,
    account_id: str,
    kind: str,
    *,
    locale: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> PurchaseResult:
    """Create (or resume) a purchase and open exactly one gateway session for it."""
    if transaction_id:
        transaction = await _resumable_transaction(db, account_id, kind, transaction_id)
        if transaction.external_payment_id:
            return PurchaseResult(
                transaction_id=transaction.id,
                external_payment_id=transaction.external_payment_id,
                redirect_url=transaction.payment_url or "",
                resumed=True,
            )
    else:
        transaction = await create_transaction(db, account_id, kind)
    order_id = transaction.id

    try:
        session = await gateway.create_session(_session_request(transaction, locale or settings.DEFAULT_LOCALE))
    except GatewayUnavailableError as exc:
        await record_error(
            "payment_creation_error",
            str(exc),
            severity="high",
            user_id=account_id,
            endpoint="/payment/create",
            context={"transaction_id": order_id, "kind": kind},
        )
        raise

    try:
        await attach_external_id(
            db,
            order_id,
            session.external_payment_id,
            payment_url=session.redirect_url,
            payment_method=gateway.provider_name,
        )
        await db.commit()
    except AlreadyAttachedError:
        await db.rollback()
        logger.error(
            "Transaction %s was attached concurrently; gateway session %s is orphaned",
            order_id,
            session.external_payment_id,
        )
        raise

    logger.info("Opened %s session %s for transaction %s", gateway.provider_name, session.external_payment_id, order_id)
    return PurchaseResult(
        transaction_id=order_id,
        external_payment_id=session.external_payment_id,
        redirect_url=session.redirect_url,
        resumed=transaction_id is not None,
    )
