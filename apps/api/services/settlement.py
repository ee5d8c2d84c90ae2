"""Settlement reconciler.

Applies gateway-reported outcomes to transactions exactly once. The status
change and its ledger side effects are committed together; a replayed or
out-of-order event loses the conditional status update and is dropped as a
logged no-op, which is what makes duplicate webhook delivery safe.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.subscription import Subscription
from models.transaction import PaymentTransaction
from models.user import User
from services import credit_meter
from services.billing_errors import (
    InvalidSignatureError,
    InvalidTransitionError,
    InvalidWebhookPayloadError,
    TransactionNotFoundError,
    UnknownTransactionError,
)
from services.error_log import record_error
from services.payments.gateway import BasePaymentGateway
from services.payments.types import EVENT_TARGET_STATUS, WebhookPayload
from services.transactions import get_transaction, transition_to

logger = logging.getLogger(__name__)

SETTLED_STATUSES = ("completed", "refunded")


@dataclass
class SettlementOutcome:
    transaction: Optional[PaymentTransaction]
    applied: bool
    reason: str
    credits_delta: int = 0

    @property
    def status(self) -> Optional[str]:
        return self.transaction.status if self.transaction is not None else None


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the last day of a shorter month."""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


async def _open_or_extend_subscription(db: AsyncSession, transaction: PaymentTransaction) -> datetime:
    now = datetime.now(timezone.utc)
    renews_at = add_one_month(now)

    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == transaction.user_id, Subscription.status == "active")
        .order_by(Subscription.current_period_end.desc())
        .limit(1)
    )
    subscription = result.scalars().first()
    if subscription is not None:
        subscription.current_period_start = now
        subscription.current_period_end = renews_at
        subscription.transaction_id = transaction.id
        subscription.price_paid = transaction.amount
    else:
        db.add(
            Subscription(
                user_id=transaction.user_id,
                transaction_id=transaction.id,
                status="active",
                plan_type="monthly",
                price_paid=transaction.amount,
                currency=transaction.currency,
                credits_per_month=transaction.credits_granted,
                started_at=now,
                current_period_start=now,
                current_period_end=renews_at,
            )
        )

    await db.execute(
        update(User)
        .where(User.id == transaction.user_id)
        .values(subscription_state="active", subscription_renews_at=renews_at)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return renews_at


async def apply_status(db: AsyncSession, transaction_id: str, target: str) -> SettlementOutcome:
    """Transition a transaction and run the side effects of the new state."""
    try:
        transaction = await transition_to(db, transaction_id, target)
    except InvalidTransitionError as exc:
        await db.rollback()
        if exc.current == target:
            logger.info("Ignoring replayed %s event for transaction %s", target, transaction_id)
            reason = "duplicate"
        else:
            logger.warning(
                "Ignoring illegal transition %s -> %s for transaction %s",
                exc.current,
                target,
                transaction_id,
            )
            reason = "illegal_transition"
        return SettlementOutcome(
            transaction=await get_transaction(db, transaction_id),
            applied=False,
            reason=reason,
        )

    credits_delta = 0
    clawback_gap = 0
    try:
        if target == "completed":
            await credit_meter.grant_purchase(db, transaction)
            credits_delta = int(transaction.credits_granted)
            if transaction.kind == "subscription":
                await _open_or_extend_subscription(db, transaction)
        elif target == "refunded":
            removed = await credit_meter.reverse_purchase(db, transaction)
            credits_delta = -removed
            clawback_gap = int(transaction.credits_granted) - removed
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Transaction %s (%s) settled as %s, credits delta %s",
        transaction.id,
        transaction.kind,
        target,
        credits_delta,
    )
    if clawback_gap > 0:
        logger.error(
            "Refund of transaction %s left %s credits unrecovered for account %s",
            transaction.id,
            clawback_gap,
            transaction.user_id,
        )
        await record_error(
            "refund_clawback_gap",
            f"Refund of transaction {transaction.id} could not recover {clawback_gap} already-spent credits.",
            severity="critical",
            user_id=transaction.user_id,
            endpoint="settlement",
            context={
                "transaction_id": transaction.id,
                "credits_granted": int(transaction.credits_granted),
                "credits_recovered": -credits_delta,
            },
        )

    return SettlementOutcome(
        transaction=await get_transaction(db, transaction_id),
        applied=True,
        reason="applied",
        credits_delta=credits_delta,
    )


async def handle_webhook_event(
    db: AsyncSession,
    gateway: BasePaymentGateway,
    raw_body: bytes,
    signature_header: str,
) -> SettlementOutcome:
    """Authenticate, parse and apply a gateway notification."""
    if not gateway.validate_webhook_signature(raw_body, signature_header or ""):
        logger.warning("Rejected payment webhook with invalid signature")
        raise InvalidSignatureError("Invalid webhook signature.")

    try:
        payload = WebhookPayload.model_validate_json(raw_body)
    except ValidationError as exc:
        raise InvalidWebhookPayloadError(f"Malformed webhook payload: {exc.error_count()} errors") from exc

    transaction = await get_transaction(db, payload.order_id)
    if transaction is None:
        logger.warning("Webhook references unknown transaction %s", payload.order_id)
        raise UnknownTransactionError(f"Transaction {payload.order_id} not found.")

    if (
        payload.payment_id
        and transaction.external_payment_id
        and payload.payment_id != transaction.external_payment_id
    ):
        logger.warning(
            "Webhook payment %s does not match transaction %s (payment %s); ignoring",
            payload.payment_id,
            transaction.id,
            transaction.external_payment_id,
        )
        return SettlementOutcome(transaction=transaction, applied=False, reason="payment_mismatch")

    event_type = payload.known_event_type()
    if event_type is None:
        logger.warning("Ignoring unhandled webhook event %r for transaction %s", payload.event_type, transaction.id)
        return SettlementOutcome(transaction=transaction, applied=False, reason="unknown_event")

    return await apply_status(db, transaction.id, EVENT_TARGET_STATUS[event_type])


async def poll_verify(
    db: AsyncSession,
    gateway: BasePaymentGateway,
    transaction_id: str,
    account_id: str,
) -> SettlementOutcome:
    """Client-driven reconciliation for when the webhook never arrives."""
    transaction = await get_transaction(db, transaction_id, account_id)
    if transaction is None:
        logger.warning("Verify for transaction %s denied to account %s", transaction_id, account_id)
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found.")

    if transaction.status in SETTLED_STATUSES:
        return SettlementOutcome(transaction=transaction, applied=False, reason="already_settled")
    if not transaction.external_payment_id:
        return SettlementOutcome(transaction=transaction, applied=False, reason="no_payment_session")

    reported = await gateway.verify_status(transaction.external_payment_id)
    if reported == transaction.status or reported == "pending":
        return SettlementOutcome(transaction=transaction, applied=False, reason="unchanged")

    return await apply_status(db, transaction.id, reported)
