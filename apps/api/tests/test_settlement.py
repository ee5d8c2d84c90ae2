from datetime import datetime

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.error_log import ErrorLog
from models.subscription import Subscription
from models.user import User
from services.billing_errors import (
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    TransactionNotFoundError,
    UnknownTransactionError,
)
from services.payments.gateway import sign_payload
from services.purchases import create_purchase
from services.settlement import add_one_month, apply_status, handle_webhook_event, poll_verify


async def _balance(session_maker, user_id: str) -> int:
    async with session_maker() as session:
        result = await session.execute(select(User.available_credits).where(User.id == user_id))
        return int(result.scalar_one())


async def _purchase(session_maker, gateway, user_id: str, kind: str):
    async with session_maker() as session:
        return await create_purchase(session, gateway, user_id, kind)


def test_add_one_month_clamps_to_month_end():
    assert add_one_month(datetime(2026, 1, 31, 12, 0)) == datetime(2026, 2, 28, 12, 0)
    assert add_one_month(datetime(2026, 12, 15)) == datetime(2027, 1, 15)
    assert add_one_month(datetime(2028, 1, 30)) == datetime(2028, 2, 29)


@pytest.mark.asyncio
async def test_completed_webhook_grants_topup_credits(session_maker, make_account, gateway):
    await make_account("buyer")
    purchase = await _purchase(session_maker, gateway, "buyer", "topup")
    body, signature = gateway.webhook("payment.completed", purchase.transaction_id, purchase.external_payment_id)

    async with session_maker() as session:
        outcome = await handle_webhook_event(session, gateway, body, signature)

    assert outcome.applied is True
    assert outcome.status == "completed"
    assert outcome.credits_delta == 10
    assert outcome.transaction.completed_at is not None
    assert await _balance(session_maker, "buyer") == 10


@pytest.mark.asyncio
async def test_replayed_completed_webhook_grants_exactly_once(session_maker, make_account, gateway):
    await make_account("buyer")
    purchase = await _purchase(session_maker, gateway, "buyer", "single")
    body, signature = gateway.webhook("payment.completed", purchase.transaction_id)

    outcomes = []
    for _ in range(4):
        async with session_maker() as session:
            outcomes.append(await handle_webhook_event(session, gateway, body, signature))

    assert [item.applied for item in outcomes] == [True, False, False, False]
    assert {item.reason for item in outcomes[1:]} == {"duplicate"}
    assert await _balance(session_maker, "buyer") == 1

    async with session_maker() as session:
        grants = (
            await session.execute(select(CreditLedger).where(CreditLedger.entry_type == "purchase"))
        ).scalars().all()
    assert len(grants) == 1
    assert grants[0].reference_id == purchase.transaction_id


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_before_lookup(session_maker, make_account, gateway):
    await make_account("buyer")
    purchase = await _purchase(session_maker, gateway, "buyer", "single")
    body, _ = gateway.webhook("payment.completed", purchase.transaction_id)

    async with session_maker() as session:
        with pytest.raises(InvalidSignatureError):
            await handle_webhook_event(session, gateway, body, "deadbeef")
        with pytest.raises(InvalidSignatureError):
            await handle_webhook_event(session, gateway, body, "")

    assert await _balance(session_maker, "buyer") == 0


@pytest.mark.asyncio
async def test_unknown_transaction_and_malformed_payload(session_maker, gateway):
    body, signature = gateway.webhook("payment.completed", "no-such-order")
    async with session_maker() as session:
        with pytest.raises(UnknownTransactionError):
            await handle_webhook_event(session, gateway, body, signature)

    raw = b'{"eventType": "payment.completed"}'
    async with session_maker() as session:
        with pytest.raises(InvalidWebhookPayloadError):
            await handle_webhook_event(session, gateway, raw, sign_payload(raw, gateway.secret))


@pytest.mark.asyncio
async def test_unhandled_event_type_is_logged_and_ignored(session_maker, make_account, gateway):
    await make_account("buyer")
    purchase = await _purchase(session_maker, gateway, "buyer", "single")
    body, signature = gateway.webhook("payment.disputed", purchase.transaction_id)

    async with session_maker() as session:
        outcome = await handle_webhook_event(session, gateway, body, signature)

    assert outcome.applied is False
    assert outcome.reason == "unknown_event"
    assert outcome.status == "pending"


@pytest.mark.asyncio
async def test_mismatched_payment_id_is_ignored(session_maker, make_account, gateway):
    await make_account("buyer")
    purchase = await _purchase(session_maker, gateway, "buyer", "single")
    body, signature = gateway.webhook("payment.completed", purchase.transaction_id, "pay_someone_else")

    async with session_maker() as session:
        outcome = await handle_webhook_event(session, gateway, body, signature)

    assert outcome.reason == "payment_mismatch"
    assert await _balance(session_maker, "buyer") == 0


@pytest.mark.asyncio
async def test_failed_then_completed_is_illegal_and_grants_nothing(session_maker, make_account, gateway):
    await make_account("buyer")
    purchase = await _purchase(session_maker, gateway, "buyer", "topup")

    async with session_maker() as session:
        failed = await apply_status(session, purchase.transaction_id, "failed")
        assert failed.applied is True
        assert failed.transaction.completed_at is None

    async with session_maker() as session:
        late = await apply_status(session, purchase.transaction_id, "completed")

    assert late.applied is False
    assert late.reason == "illegal_transition"
    assert late.status == "failed"
    assert await _balance(session_maker, "buyer") == 0


@pytest.mark.asyncio
async def test_refund_before_completion_is_a_no_op(session_maker, make_account, gateway):
    await make_account("buyer", credits=2)
    purchase = await _purchase(session_maker, gateway, "buyer", "topup")
    body, signature = gateway.webhook("payment.refunded", purchase.transaction_id)

    async with session_maker() as session:
        outcome = await handle_webhook_event(session, gateway, body, signature)

    assert outcome.applied is False
    assert outcome.status == "pending"
    assert await _balance(session_maker, "buyer") == 2


@pytest.mark.asyncio
async def test_subscription_completion_opens_subscription(session_maker, make_account, gateway):
    await make_account("subscriber")
    purchase = await _purchase(session_maker, gateway, "subscriber", "subscription")

    async with session_maker() as session:
        await apply_status(session, purchase.transaction_id, "completed")

    async with session_maker() as session:
        user = (await session.execute(select(User).where(User.id == "subscriber"))).scalar_one()
        subscriptions = (await session.execute(select(Subscription))).scalars().all()

    assert user.available_credits == 12
    assert user.total_credits_purchased == 12
    assert user.subscription_state == "active"
    assert user.subscription_renews_at is not None
    assert len(subscriptions) == 1
    assert subscriptions[0].transaction_id == purchase.transaction_id
    assert subscriptions[0].credits_per_month == 12
    assert subscriptions[0].price_paid == 999


@pytest.mark.asyncio
async def test_second_subscription_purchase_extends_existing_record(session_maker, make_account, gateway):
    await make_account("subscriber")
    first = await _purchase(session_maker, gateway, "subscriber", "subscription")
    second = await _purchase(session_maker, gateway, "subscriber", "subscription")

    async with session_maker() as session:
        await apply_status(session, first.transaction_id, "completed")
    async with session_maker() as session:
        await apply_status(session, second.transaction_id, "completed")

    async with session_maker() as session:
        subscriptions = (await session.execute(select(Subscription))).scalars().all()

    assert len(subscriptions) == 1
    assert subscriptions[0].transaction_id == second.transaction_id
    assert await _balance(session_maker, "subscriber") == 24


@pytest.mark.asyncio
async def test_subscription_refund_after_spending_floors_and_logs_gap(session_maker, make_account, gateway):
    await make_account("subscriber")
    purchase = await _purchase(session_maker, gateway, "subscriber", "subscription")
    async with session_maker() as session:
        await apply_status(session, purchase.transaction_id, "completed")

    # Spend most of the grant before the refund arrives.
    async with session_maker() as session:
        await session.execute(
            update(User).where(User.id == "subscriber").values(available_credits=5)
        )
        await session.commit()

    body, signature = gateway.webhook("payment.refunded", purchase.transaction_id)
    async with session_maker() as session:
        outcome = await handle_webhook_event(session, gateway, body, signature)

    assert outcome.applied is True
    assert outcome.status == "refunded"
    assert outcome.credits_delta == -5
    assert await _balance(session_maker, "subscriber") == 0

    async with session_maker() as session:
        user = (await session.execute(select(User).where(User.id == "subscriber"))).scalar_one()
        errors = (await session.execute(select(ErrorLog))).scalars().all()

    assert user.subscription_state == "active"
    assert [error.error_type for error in errors] == ["refund_clawback_gap"]
    assert errors[0].severity == "critical"
    assert errors[0].context_json["credits_recovered"] == 5


@pytest.mark.asyncio
async def test_full_refund_of_untouched_purchase_restores_balance(session_maker, make_account, gateway):
    await make_account("buyer", credits=3)
    purchase = await _purchase(session_maker, gateway, "buyer", "topup")
    async with session_maker() as session:
        await apply_status(session, purchase.transaction_id, "completed")
    assert await _balance(session_maker, "buyer") == 13

    async with session_maker() as session:
        refund = await apply_status(session, purchase.transaction_id, "refunded")
    async with session_maker() as session:
        replay = await apply_status(session, purchase.transaction_id, "refunded")

    assert refund.credits_delta == -10
    assert replay.applied is False
    assert await _balance(session_maker, "buyer") == 3


@pytest.mark.asyncio
async def test_poll_verify_reconciles_when_webhook_is_missing(session_maker, make_account, gateway):
    await make_account("buyer")
    purchase = await _purchase(session_maker, gateway, "buyer", "topup")
    gateway.statuses[purchase.external_payment_id] = "completed"

    async with session_maker() as session:
        outcome = await poll_verify(session, gateway, purchase.transaction_id, "buyer")
    assert outcome.applied is True
    assert outcome.status == "completed"
    assert await _balance(session_maker, "buyer") == 10

    async with session_maker() as session:
        again = await poll_verify(session, gateway, purchase.transaction_id, "buyer")
    assert again.reason == "already_settled"
    assert gateway.verify_calls == [purchase.external_payment_id]
    assert await _balance(session_maker, "buyer") == 10


@pytest.mark.asyncio
async def test_poll_verify_still_pending_changes_nothing(session_maker, make_account, gateway):
    await make_account("buyer")
    purchase = await _purchase(session_maker, gateway, "buyer", "single")

    async with session_maker() as session:
        outcome = await poll_verify(session, gateway, purchase.transaction_id, "buyer")

    assert outcome.applied is False
    assert outcome.reason == "unchanged"
    assert outcome.status == "pending"


@pytest.mark.asyncio
async def test_poll_verify_rejects_other_accounts(session_maker, make_account, gateway):
    await make_account("buyer")
    await make_account("intruder")
    purchase = await _purchase(session_maker, gateway, "buyer", "single")

    async with session_maker() as session:
        with pytest.raises(TransactionNotFoundError):
            await poll_verify(session, gateway, purchase.transaction_id, "intruder")

    assert gateway.verify_calls == []
