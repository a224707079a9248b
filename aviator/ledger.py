# ledger.py
"""
Wallet Ledger

Every balance mutation goes through apply_transaction(), which locks the
wallet row, checks the balance never goes negative and appends the
matching Transaction. The helpers flush but never commit: the caller owns
the DB transaction, so a bet status change and its ledger entry commit or
roll back together.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import GameConfig
from .db import (
    Bet,
    BetStatus,
    GameRound,
    RoundStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    get_or_create_user,
)
from .errors import (
    BettingDisabled,
    DepositLimitExceeded,
    InsufficientFunds,
    LossLimitReached,
    SessionTimeLimitExceeded,
    ValidationError,
)
from .utils import MONEY_PLACES, as_utc, parse_decimal, require_cents, to_money, utcnow

logger = logging.getLogger("aviator.ledger")

MAX_PAGE_SIZE = 100


# =====================================================
# LOW LEVEL (caller owns the DB transaction)
# =====================================================

async def apply_transaction(
    session: AsyncSession,
    user_id: int,
    amount: Decimal,
    tx_type: TransactionType,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    round_id: Optional[str] = None,
    bet_id: Optional[str] = None,
    reference: Optional[str] = None,
    payment_method: Optional[str] = None,
) -> Transaction:
    """
    Atomic balance update + immutable ledger entry.

    Args:
        amount: the signed change to the balance (negative for debits).
    """

    # Lock the wallet row (no-op on SQLite, where the per-user asyncio
    # lock does the serialising)
    result = await session.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one()

    amount = to_money(amount)
    new_balance = user.balance + amount

    if new_balance < 0:
        raise InsufficientFunds(
            f"Insufficient balance: {user.balance:.2f} available, {-amount:.2f} required"
        )

    user.balance = new_balance

    tx = Transaction(
        user_id=user.id,
        type=tx_type,
        status=status,
        amount=amount,
        balance_after=new_balance,
        round_id=round_id,
        bet_id=bet_id,
        reference=reference,
        payment_method=payment_method,
    )
    session.add(tx)
    await session.flush()
    return tx


async def debit(
    session: AsyncSession,
    user_id: int,
    amount: Decimal,
    tx_type: TransactionType = TransactionType.BET,
    **kwargs: Any,
) -> Transaction:
    """Deducts money (placing a bet, withdrawing)."""
    if amount <= 0:
        raise ValidationError("Debit amount must be positive")
    return await apply_transaction(session, user_id, -amount, tx_type, **kwargs)


async def credit(
    session: AsyncSession,
    user_id: int,
    amount: Decimal,
    tx_type: TransactionType = TransactionType.PAYOUT,
    **kwargs: Any,
) -> Transaction:
    """Adds money (cash-out payout, deposit, bonus)."""
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")
    return await apply_transaction(session, user_id, amount, tx_type, **kwargs)


# =====================================================
# LOCKS
# =====================================================

class WalletLocks:
    """
    One asyncio.Lock per wallet; different wallets never contend.
    A lock lives only while some coroutine holds or awaits it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def for_user(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


# =====================================================
# RESPONSIBLE GAMING (caller owns the DB transaction)
# =====================================================

def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


async def _sum_since(
    session: AsyncSession,
    user_id: int,
    tx_types: list[TransactionType],
    since: datetime,
) -> Decimal:
    total = await session.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0))
        .where(Transaction.user_id == user_id)
        .where(Transaction.type.in_(tx_types))
        .where(Transaction.created_at >= since)
    )
    return _money(total)


async def check_betting_access(
    session: AsyncSession,
    user_id: int,
    session_break_sec: int,
    now: Optional[datetime] = None,
) -> User:
    """
    Gate for bet placement: betting must be enabled on the account and
    the current play session must be within its time limit. A bet after
    an idle gap of session_break_sec starts a new session.
    """
    now = now or utcnow()
    result = await session.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one()

    if not user.betting_enabled:
        raise BettingDisabled("Betting is disabled for this account")

    started = as_utc(user.session_started_at)
    last_bet = as_utc(user.last_bet_at)
    if started is None or last_bet is None or now - last_bet >= timedelta(seconds=session_break_sec):
        user.session_started_at = now
    elif user.session_time_limit and now - started > timedelta(seconds=user.session_time_limit):
        raise SessionTimeLimitExceeded("Session time limit exceeded. Please take a break.")

    user.last_bet_at = now
    return user


async def check_deposit_limit(
    session: AsyncSession,
    user: User,
    amount: Decimal,
    now: Optional[datetime] = None,
) -> None:
    """Deposits of one UTC day may not add up to more than deposit_limit."""
    if user.deposit_limit is None:
        return
    deposited = await _sum_since(
        session, user.id, [TransactionType.DEPOSIT], day_start(now or utcnow())
    )
    if deposited + amount > user.deposit_limit:
        raise DepositLimitExceeded(
            f"Daily deposit limit exceeded ({user.deposit_limit:.2f}, "
            f"{deposited:.2f} already deposited today)"
        )


async def check_loss_limit(
    session: AsyncSession,
    user: User,
    now: Optional[datetime] = None,
) -> None:
    """Withdrawals are held once today's net betting loss passes loss_limit."""
    if user.loss_limit is None:
        return
    # Stakes are negative, payouts positive
    net = await _sum_since(
        session,
        user.id,
        [TransactionType.BET, TransactionType.PAYOUT],
        day_start(now or utcnow()),
    )
    if -net > user.loss_limit:
        raise LossLimitReached("Loss limit reached. Please contact support.")


# =====================================================
# WALLET SERVICE
# =====================================================

class WalletLedger:
    """Deposits, withdrawals and read access for the wallet endpoints."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: GameConfig,
        locks: Optional[WalletLocks] = None,
    ) -> None:
        self._session_factory = session_factory
        self.config = config
        self.locks = locks or WalletLocks()

    async def get_wallet(self, external_id: str, name: Optional[str] = None) -> User:
        async with self._session_factory() as session:
            return await get_or_create_user(
                session,
                external_id,
                name,
                self.config.starting_balance,
                self.config.wallet_limits(),
            )

    async def deposit(
        self,
        external_id: str,
        amount: Any,
        payment_method: Optional[str] = None,
    ) -> Transaction:
        value = self._validate_amount(amount)
        user = await self.get_wallet(external_id)

        async with self.locks.for_user(user.id):
            async with self._session_factory() as session:
                await check_deposit_limit(session, await session.get(User, user.id), value)
                tx = await credit(
                    session,
                    user.id,
                    value,
                    TransactionType.DEPOSIT,
                    payment_method=payment_method,
                )
                await session.commit()

        logger.info(f"Deposit {value} for user {external_id}")
        return tx

    async def withdraw(
        self,
        external_id: str,
        amount: Any,
        payment_method: Optional[str] = None,
    ) -> Transaction:
        """
        Debits immediately; the transaction stays pending until the
        external payout provider confirms it.
        """
        value = self._validate_amount(amount)
        if value < self.config.min_withdrawal:
            raise ValidationError(
                f"Minimum withdrawal amount is {self.config.min_withdrawal}"
            )

        user = await self.get_wallet(external_id)

        async with self.locks.for_user(user.id):
            async with self._session_factory() as session:
                await check_loss_limit(session, await session.get(User, user.id))
                tx = await debit(
                    session,
                    user.id,
                    value,
                    TransactionType.WITHDRAWAL,
                    status=TransactionStatus.PENDING,
                    payment_method=payment_method,
                )
                await session.commit()

        logger.info(f"Withdrawal {value} requested by user {external_id}")
        return tx

    async def update_settings(self, external_id: str, **changes: Any) -> User:
        """
        Responsible-gaming settings: deposit_limit and loss_limit (None
        removes the limit), session_time_limit in seconds (0 removes it),
        betting_enabled.
        """
        values: dict[str, Any] = {}
        for key in ("deposit_limit", "loss_limit"):
            if key in changes:
                limit = changes[key]
                if limit is not None:
                    limit = require_cents(parse_decimal(limit, key), key)
                    if limit < 0:
                        raise ValidationError(f"{key} cannot be negative")
                values[key] = limit
        if "session_time_limit" in changes:
            seconds = changes["session_time_limit"]
            if not isinstance(seconds, int) or isinstance(seconds, bool) or seconds < 0:
                raise ValidationError("session_time_limit must be a non-negative number of seconds")
            values["session_time_limit"] = seconds
        if "betting_enabled" in changes:
            values["betting_enabled"] = bool(changes["betting_enabled"])

        user = await self.get_wallet(external_id)
        async with self.locks.for_user(user.id):
            async with self._session_factory() as session:
                user = await session.get(User, user.id)
                for key, value in values.items():
                    setattr(user, key, value)
                await session.commit()

        logger.info(f"Settings updated for user {external_id}: {sorted(values)}")
        return user

    async def transactions(
        self,
        external_id: str,
        page: int = 1,
        limit: int = 20,
        tx_type: Optional[str] = None,
    ) -> tuple[list[Transaction], int]:
        validate_page(page, limit)
        user = await self.get_wallet(external_id)

        filters = [Transaction.user_id == user.id]
        if tx_type:
            try:
                filters.append(Transaction.type == TransactionType(tx_type))
            except ValueError:
                raise ValidationError(f"Unknown transaction type: {tx_type}") from None

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(Transaction).where(*filters)
            )
            result = await session.execute(
                select(Transaction)
                .where(*filters)
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars()), total or 0

    def _validate_amount(self, amount: Any) -> Decimal:
        value = parse_decimal(amount)
        if value <= 0:
            raise ValidationError("Amount must be positive")
        return require_cents(value)


def validate_page(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")


# =====================================================
# RECONCILIATION
# =====================================================

async def reconcile(
    session: AsyncSession,
    start: datetime,
    end: datetime,
) -> dict[str, Decimal | bool]:
    """
    Match ledger flows against bet outcomes for rounds crashed in
    [start, end).

    debits - credits must equal the stake of crashed bets plus
    stake - payout of cashed-out bets.
    """
    round_ids = (
        select(GameRound.round_id)
        .where(GameRound.status == RoundStatus.CRASHED)
        .where(GameRound.crashed_at >= start, GameRound.crashed_at < end)
        .scalar_subquery()
    )

    bet_debits = await session.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0))
        .where(Transaction.type == TransactionType.BET)
        .where(Transaction.round_id.in_(round_ids))
    )
    payout_credits = await session.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0))
        .where(Transaction.type == TransactionType.PAYOUT)
        .where(Transaction.round_id.in_(round_ids))
    )
    crashed_stakes = await session.scalar(
        select(func.coalesce(func.sum(Bet.amount), 0))
        .where(Bet.status == BetStatus.CRASHED)
        .where(Bet.round_id.in_(round_ids))
    )
    cashed_margin = await session.scalar(
        select(func.coalesce(func.sum(Bet.amount - Bet.payout), 0))
        .where(Bet.status == BetStatus.CASHED_OUT)
        .where(Bet.round_id.in_(round_ids))
    )

    debits = -_money(bet_debits)
    credits = _money(payout_credits)
    expected = _money(crashed_stakes) + _money(cashed_margin)

    return {
        "bet_debits": debits,
        "payout_credits": credits,
        "house_result": debits - credits,
        "expected": expected,
        "balanced": debits - credits == expected,
    }


def _money(value: Any) -> Decimal:
    # SQLite sums come back as floats; round to storage scale, not down
    return Decimal(str(value)).quantize(MONEY_PLACES)
