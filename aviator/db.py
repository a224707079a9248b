# db.py
"""
Database Layer

Responsibilities:
- Async database engine & session lifecycle
- Wallet (user balance) persistence
- Append-only transaction ledger linked to rounds and bets
- Round and bet records (the game history)

All financial values are Decimal; money is stored with four decimal
places so payouts of two-place amounts at two-place multipliers are exact.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .utils import utcnow

Money = Numeric(20, 4)
Multiplier = Numeric(12, 2)


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS
# =====================================================

class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BET = "bet"
    PAYOUT = "payout"
    BONUS = "bonus"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RoundStatus(str, enum.Enum):
    WAITING = "waiting"  # Accepting bets
    FLYING = "flying"    # Multiplier rising
    CRASHED = "crashed"  # Round ended


class BetStatus(str, enum.Enum):
    ACTIVE = "active"
    CASHED_OUT = "cashed_out"
    CRASHED = "crashed"


# =====================================================
# MODELS
# =====================================================

class User(Base):
    """Wallet owner. Balance is mutated only through the ledger."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # User id issued by the auth layer
    external_id: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False
    )

    name: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    # --- RESPONSIBLE GAMING ---
    betting_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Per UTC day; None means no limit
    deposit_limit: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    loss_limit: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    # Seconds of continuous play; 0 means no limit
    session_time_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    session_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_bet_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="raise",
    )


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    Signed amount: negative for debits (bet, withdrawal).
    """

    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type"), nullable=False
    )

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, name="transaction_status"),
        nullable=False,
        default=TransactionStatus.COMPLETED,
    )

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)

    round_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    bet_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Extra metadata (e.g. "cashout x2.50")
    reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )

    user: Mapped[User] = relationship(back_populates="transactions")


class GameRound(Base):
    """
    One play of the crash game. crash_point is committed when the row is
    created and never updated afterwards.
    """

    __tablename__ = "game_rounds"

    round_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    server_seed: Mapped[str] = mapped_column(String(128), nullable=False)
    server_seed_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    client_seed: Mapped[str] = mapped_column(String(64), nullable=False)
    nonce: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    crash_point: Mapped[Decimal] = mapped_column(Multiplier, nullable=False)

    # Where the round actually stopped; differs from crash_point only when forced
    final_multiplier: Mapped[Optional[Decimal]] = mapped_column(Multiplier, nullable=True)

    # Recovery checkpoint of the live multiplier
    last_multiplier: Mapped[Decimal] = mapped_column(
        Multiplier, nullable=False, default=Decimal("1.00")
    )

    status: Mapped[RoundStatus] = mapped_column(
        Enum(RoundStatus, name="round_status"),
        nullable=False,
        default=RoundStatus.WAITING,
        index=True,
    )

    forced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    total_bets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_pool: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    crashed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    bets: Mapped[list["Bet"]] = relationship(back_populates="round", lazy="raise")


class Bet(Base):
    __tablename__ = "bets"
    __table_args__ = (
        Index("ix_bets_user_placed", "user_id", "placed_at"),
        Index("ix_bets_status_resolved", "status", "resolved_at"),
    )

    bet_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )

    round_id: Mapped[str] = mapped_column(
        ForeignKey("game_rounds.round_id", ondelete="CASCADE"), index=True, nullable=False
    )

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    auto_cashout: Mapped[Optional[Decimal]] = mapped_column(Multiplier, nullable=True)

    status: Mapped[BetStatus] = mapped_column(
        Enum(BetStatus, name="bet_status"), nullable=False, default=BetStatus.ACTIVE
    )

    cash_out_multiplier: Mapped[Optional[Decimal]] = mapped_column(Multiplier, nullable=True)

    payout: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    placed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    round: Mapped[GameRound] = relationship(back_populates="bets")
    user: Mapped[User] = relationship(lazy="raise")


# =====================================================
# ENGINE & SESSION
# =====================================================

def create_db_engine(database_url: str, echo: bool = False, **kwargs) -> AsyncEngine:
    connect_args = kwargs.pop("connect_args", {})
    # SSL is critical for Postgres in production
    if "postgresql" in database_url and "ssl" not in connect_args:
        connect_args["ssl"] = "require"

    return create_async_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        **kwargs,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


# =====================================================
# INIT
# =====================================================

async def init_db(engine: AsyncEngine) -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# =====================================================
# REPOSITORY HELPERS
# =====================================================

async def get_or_create_user(
    session: AsyncSession,
    external_id: str,
    name: Optional[str] = None,
    starting_balance: Decimal = Decimal("0"),
    limits: Optional[dict[str, Any]] = None,
) -> User:
    """
    Fetches a user or creates one with the starting balance and the
    default responsible-gaming limits.
    Commits only when a new wallet is created.
    """
    result = await session.execute(select(User).where(User.external_id == external_id))
    user = result.scalar_one_or_none()

    if user:
        if name and user.name != name:
            user.name = name
            await session.commit()
        return user

    user = User(
        external_id=external_id,
        name=name or external_id,
        balance=starting_balance,
        **(limits or {}),
    )
    session.add(user)

    try:
        if starting_balance > 0:
            # Welcome balance is a ledger entry like any other credit
            await session.flush()
            session.add(
                Transaction(
                    user_id=user.id,
                    type=TransactionType.BONUS,
                    amount=starting_balance,
                    balance_after=starting_balance,
                    reference="starting_balance",
                )
            )
        await session.commit()
        return user
    except IntegrityError:
        # Created in parallel by another request
        await session.rollback()
        return await get_or_create_user(session, external_id, name, starting_balance, limits)


async def get_user(session: AsyncSession, external_id: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()
