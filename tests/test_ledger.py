"""Wallet ledger: deposits, withdrawals, history and reconciliation."""

import asyncio
import gc
from datetime import timedelta
from decimal import Decimal

import pytest

from aviator.config import GameConfig
from aviator.db import TransactionStatus, TransactionType
from aviator.errors import (
    DepositLimitExceeded,
    InsufficientFunds,
    LossLimitReached,
    ValidationError,
)
from aviator.ledger import WalletLedger, WalletLocks, reconcile
from aviator.utils import utcnow


def test_deposit_credits_and_records(ledger):
    async def scenario():
        tx = await ledger.deposit("alice", "250.50", payment_method="card")

        assert tx.type == TransactionType.DEPOSIT
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.amount == Decimal("250.50")
        assert tx.balance_after == Decimal("250.50")
        assert tx.payment_method == "card"

        wallet = await ledger.get_wallet("alice")
        assert wallet.balance == Decimal("250.50")

    asyncio.run(scenario())


@pytest.mark.parametrize("amount", [0, -5, "1.001", "nope"])
def test_deposit_rejects_bad_amounts(ledger, amount):
    async def scenario():
        with pytest.raises(ValidationError):
            await ledger.deposit("bob", amount)
        assert (await ledger.get_wallet("bob")).balance == Decimal("0")

    asyncio.run(scenario())


def test_withdraw_debits_immediately_as_pending(ledger):
    async def scenario():
        await ledger.deposit("carol", "100")
        tx = await ledger.withdraw("carol", "40", payment_method="bank")

        assert tx.type == TransactionType.WITHDRAWAL
        assert tx.status == TransactionStatus.PENDING
        assert tx.amount == Decimal("-40")
        assert tx.balance_after == Decimal("60")
        assert (await ledger.get_wallet("carol")).balance == Decimal("60")

    asyncio.run(scenario())


def test_withdraw_limits(ledger):
    async def scenario():
        await ledger.deposit("dave", "50")

        with pytest.raises(ValidationError):
            await ledger.withdraw("dave", "5")  # below minimum
        with pytest.raises(InsufficientFunds):
            await ledger.withdraw("dave", "60")

        assert (await ledger.get_wallet("dave")).balance == Decimal("50")
        _, total = await ledger.transactions("dave")
        assert total == 1

    asyncio.run(scenario())


def test_concurrent_withdrawals_never_overdraw(ledger):
    async def scenario():
        await ledger.deposit("erin", "100")

        results = await asyncio.gather(
            *(ledger.withdraw("erin", "30") for _ in range(5)),
            return_exceptions=True,
        )

        ok = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(ok) == 3
        assert all(isinstance(e, InsufficientFunds) for e in failed)
        assert (await ledger.get_wallet("erin")).balance == Decimal("10")

    asyncio.run(scenario())


def test_transactions_paginate_and_filter(ledger):
    async def scenario():
        for amount in ("10", "20", "30"):
            await ledger.deposit("frank", amount)
        await ledger.withdraw("frank", "15")

        page, total = await ledger.transactions("frank", page=1, limit=2)
        assert total == 4
        assert len(page) == 2
        assert page[0].type == TransactionType.WITHDRAWAL

        rest, _ = await ledger.transactions("frank", page=2, limit=2)
        assert [tx.amount for tx in rest] == [Decimal("20"), Decimal("10")]

        deposits, total = await ledger.transactions("frank", tx_type="deposit")
        assert total == 3
        assert {tx.type for tx in deposits} == {TransactionType.DEPOSIT}

        with pytest.raises(ValidationError):
            await ledger.transactions("frank", tx_type="refund")
        with pytest.raises(ValidationError):
            await ledger.transactions("frank", limit=500)

    asyncio.run(scenario())


def test_starting_balance_is_a_bonus_entry(session_factory, wallet_locks):
    config = GameConfig(starting_balance=Decimal("1000"))
    ledger = WalletLedger(session_factory, config, wallet_locks)

    async def scenario():
        wallet = await ledger.get_wallet("gina", name="Gina")
        assert wallet.balance == Decimal("1000")
        assert wallet.name == "Gina"

        txs, total = await ledger.transactions("gina")
        assert total == 1
        assert txs[0].type == TransactionType.BONUS
        assert txs[0].balance_after == Decimal("1000")

        # Seen again: no second bonus
        await ledger.get_wallet("gina")
        _, total = await ledger.transactions("gina")
        assert total == 1

    asyncio.run(scenario())


def test_reconcile_matches_bet_outcomes(make_engine, ledger, clock, session_factory):
    async def scenario():
        start = utcnow() - timedelta(minutes=1)
        engine = make_engine("1.50")
        await ledger.deposit("hank", "500")
        await ledger.deposit("ivy", "500")

        await engine.open_round()
        winner = await engine.place_bet("hank", 100, auto_cashout="1.20")
        await engine.place_bet("ivy", "45.50")
        await engine.start_flight()
        clock.advance(4)
        await engine.tick()
        clock.advance(10)
        await engine.tick()

        assert winner.payout == Decimal("120")

        async with session_factory() as session:
            report = await reconcile(session, start, utcnow() + timedelta(minutes=1))

        assert report["bet_debits"] == Decimal("145.50")
        assert report["payout_credits"] == Decimal("120")
        assert report["house_result"] == Decimal("25.50")
        assert report["balanced"] is True

    asyncio.run(scenario())


def test_daily_deposit_limit(ledger):
    async def scenario():
        await ledger.deposit("jill", "800")

        with pytest.raises(DepositLimitExceeded) as exc:
            await ledger.deposit("jill", "300")
        assert exc.value.status_code == 403
        assert exc.value.code == "DEPOSIT_LIMIT_EXCEEDED"
        assert (await ledger.get_wallet("jill")).balance == Decimal("800")

        await ledger.deposit("jill", "200")  # exactly at the limit

        await ledger.update_settings("jill", deposit_limit=None)
        await ledger.deposit("jill", "300")
        assert (await ledger.get_wallet("jill")).balance == Decimal("1300")

    asyncio.run(scenario())


def test_loss_limit_holds_withdrawals(make_engine, ledger, clock):
    async def scenario():
        engine = make_engine("1.10")
        await ledger.deposit("kim", "500")
        await ledger.update_settings("kim", loss_limit="50")

        await engine.open_round()
        await engine.place_bet("kim", 80)
        await engine.start_flight()
        clock.advance(10)
        await engine.tick()

        with pytest.raises(LossLimitReached):
            await ledger.withdraw("kim", "100")
        assert (await ledger.get_wallet("kim")).balance == Decimal("420")

        await ledger.update_settings("kim", loss_limit="100")
        tx = await ledger.withdraw("kim", "100")
        assert tx.status == TransactionStatus.PENDING

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "changes",
    [
        {"deposit_limit": "-5"},
        {"loss_limit": "1.001"},
        {"deposit_limit": "abc"},
        {"session_time_limit": -1},
        {"session_time_limit": "60"},
        {"session_time_limit": True},
    ],
)
def test_update_settings_rejects_bad_values(ledger, changes):
    async def scenario():
        with pytest.raises(ValidationError):
            await ledger.update_settings("lou", **changes)

        wallet = await ledger.get_wallet("lou")
        assert wallet.deposit_limit == Decimal("1000")
        assert wallet.loss_limit == Decimal("500")
        assert wallet.session_time_limit == 3600

    asyncio.run(scenario())


def test_update_settings_applies_only_given_keys(ledger):
    async def scenario():
        user = await ledger.update_settings("max", session_time_limit=0, betting_enabled=False)

        assert user.session_time_limit == 0
        assert user.betting_enabled is False
        assert user.deposit_limit == Decimal("1000")

        wallet = await ledger.get_wallet("max")
        assert wallet.session_time_limit == 0
        assert wallet.betting_enabled is False

    asyncio.run(scenario())


def test_wallet_locks_are_dropped_when_unused():
    locks = WalletLocks()
    lock = locks.for_user(7)

    assert locks.for_user(7) is lock
    assert len(locks) == 1

    del lock
    gc.collect()
    assert len(locks) == 0


def test_wallet_locks_do_not_accumulate(ledger, wallet_locks):
    async def scenario():
        for n in range(20):
            await ledger.deposit(f"user-{n}", "10")
        gc.collect()
        assert len(wallet_locks) == 0

    asyncio.run(scenario())
