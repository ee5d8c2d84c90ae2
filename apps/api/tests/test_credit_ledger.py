import asyncio

import pytest
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.transaction import PaymentTransaction
from models.user import User
from services import credit_meter
from services import credits as ledger
from services.accounts import provision_account
from services.billing_errors import AccountNotFoundError


async def _account(session_maker, user_id: str) -> User:
    async with session_maker() as session:
        result = await session.execute(select(User).where(User.id == user_id))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_increment_updates_balance_total_and_journal(session_maker, make_account):
    await make_account("ledger-user")

    async with session_maker() as session:
        balance = await ledger.increment("ledger-user", session, credits=10, entry_type="purchase")
        await session.commit()

    assert balance == 10
    account = await _account(session_maker, "ledger-user")
    assert account.available_credits == 10
    assert account.total_credits_purchased == 10

    async with session_maker() as session:
        entries = (await session.execute(select(CreditLedger))).scalars().all()
    assert len(entries) == 1
    assert entries[0].entry_type == "purchase"
    assert entries[0].delta_credits == 10
    assert entries[0].balance_after == 10


@pytest.mark.asyncio
async def test_increment_unknown_account_raises(session_maker):
    async with session_maker() as session:
        with pytest.raises(AccountNotFoundError):
            await ledger.increment("ghost", session, credits=1, entry_type="purchase")


@pytest.mark.asyncio
async def test_non_positive_amounts_are_rejected(session_maker, make_account):
    await make_account("ledger-user", credits=3)
    async with session_maker() as session:
        with pytest.raises(ValueError):
            await ledger.increment("ledger-user", session, credits=0, entry_type="purchase")
        with pytest.raises(ValueError):
            await ledger.decrement("ledger-user", session, credits=-1, entry_type="usage_debit")


@pytest.mark.asyncio
async def test_decrement_refuses_overdraft_without_mutation(session_maker, make_account):
    await make_account("ledger-user", credits=2)

    async with session_maker() as session:
        assert await ledger.decrement("ledger-user", session, credits=3, entry_type="usage_debit") is False
        await session.commit()

    account = await _account(session_maker, "ledger-user")
    assert account.available_credits == 2
    async with session_maker() as session:
        entries = (await session.execute(select(CreditLedger))).scalars().all()
    assert entries == []


@pytest.mark.asyncio
async def test_decrement_unknown_account_raises(session_maker):
    async with session_maker() as session:
        with pytest.raises(AccountNotFoundError):
            await ledger.decrement("ghost", session, credits=1, entry_type="usage_debit")


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_maker, make_account):
    await make_account("busy-user", credits=3)

    async def debit_once() -> bool:
        async with session_maker() as session:
            ok = await credit_meter.debit_for_usage(session, "busy-user")
            if ok:
                await session.commit()
            else:
                await session.rollback()
            return ok

    outcomes = await asyncio.gather(*(debit_once() for _ in range(8)))

    assert outcomes.count(True) == 3
    assert outcomes.count(False) == 5
    account = await _account(session_maker, "busy-user")
    assert account.available_credits == 0


@pytest.mark.asyncio
async def test_usage_refund_restores_balance_but_not_purchase_total(session_maker, make_account):
    await make_account("ledger-user", credits=1)

    async with session_maker() as session:
        assert await credit_meter.debit_for_usage(session, "ledger-user") is True
        await credit_meter.refund_usage(session, "ledger-user")
        await session.commit()

    account = await _account(session_maker, "ledger-user")
    assert account.available_credits == 1
    assert account.total_credits_purchased == 0


@pytest.mark.asyncio
async def test_grant_then_reverse_purchase_round_trips(session_maker, make_account):
    await make_account("ledger-user", credits=4)
    transaction = PaymentTransaction(
        id="txn-roundtrip",
        user_id="ledger-user",
        kind="topup",
        status="completed",
        amount=999,
        currency="USD",
        credits_granted=10,
    )
    async with session_maker() as session:
        session.add(transaction)
        await session.commit()

    async with session_maker() as session:
        await credit_meter.grant_purchase(session, transaction)
        await session.commit()
    assert (await _account(session_maker, "ledger-user")).available_credits == 14

    async with session_maker() as session:
        removed = await credit_meter.reverse_purchase(session, transaction)
        await session.commit()

    assert removed == 10
    assert (await _account(session_maker, "ledger-user")).available_credits == 4


@pytest.mark.asyncio
async def test_clawback_floors_at_zero_when_credits_were_spent(session_maker, make_account):
    await make_account("spender", credits=3)

    async with session_maker() as session:
        removed = await ledger.clawback("spender", session, credits=10, reference_id="txn-1")
        await session.commit()

    assert removed == 3
    assert (await _account(session_maker, "spender")).available_credits == 0

    async with session_maker() as session:
        assert await ledger.clawback("spender", session, credits=10) == 0


@pytest.mark.asyncio
async def test_trial_credit_is_granted_once(session_maker):
    async with session_maker() as session:
        first = await provision_account(session, "guest-1", guest=True)
        assert first.available_credits == 1
        assert first.trial_granted_at is not None

    async with session_maker() as session:
        again = await provision_account(session, "guest-1", guest=True)
        assert again.available_credits == 1

    async with session_maker() as session:
        assert await credit_meter.grant_trial(session, "guest-1") is False
        entries = (
            await session.execute(select(CreditLedger).where(CreditLedger.entry_type == "trial_grant"))
        ).scalars().all()
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_registered_accounts_start_with_zero_credits(session_maker):
    async with session_maker() as session:
        user = await provision_account(session, "member-1", guest=False, email="member@example.com")

    assert user.available_credits == 0
    assert user.trial_granted_at is None
    assert user.subscription_state == "none"
