# engine.py
"""
Aviator / Crash Game Engine

Responsibilities:
- Strict round state machine (WAITING -> FLYING -> CRASHED -> new WAITING)
- Crash point committed at round open (provably fair seed)
- Bet registry: placement, manual and automatic cash-out
- Race-free settlement: one asyncio.Lock owns phase, multiplier and bet status
- Fatal-and-recover-forward: faults force-crash the round, never resume it
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .broadcast import EventBroadcaster, Subscriber
from .config import GameConfig
from .db import (
    Bet,
    BetStatus,
    GameRound,
    RoundStatus,
    TransactionType,
    User,
    get_or_create_user,
)
from .errors import (
    BetAlreadyResolved,
    BetNotFound,
    DuplicateActiveBet,
    RoundAlreadyCrashed,
    RoundNotAcceptingBets,
    RoundNotInFlight,
    StateError,
    ValidationError,
)
from .ledger import WalletLocks, check_betting_access, credit, debit
from .utils import (
    ONE,
    crash_point_from_seed,
    derive_server_seed,
    generate_round_id,
    generate_server_seed,
    hash_sha256,
    multiplier_at,
    parse_decimal,
    require_cents,
    utcnow,
)

logger = logging.getLogger("aviator.engine")

CrashPointFn = Callable[[str, str, int], Decimal]


# =========================
# LIVE STATE
# =========================

@dataclass
class LiveBet:
    bet_id: str
    round_id: str
    user_id: int
    external_id: str
    user_name: str
    amount: Decimal
    auto_cashout: Optional[Decimal] = None
    placed_at: float = field(default_factory=time.time)

    # Outcome
    status: BetStatus = BetStatus.ACTIVE
    cash_out_multiplier: Optional[Decimal] = None
    payout: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "betId": self.bet_id,
            "roundId": self.round_id,
            "userId": self.external_id,
            "amount": float(self.amount),
            "autoCashout": float(self.auto_cashout) if self.auto_cashout else None,
            "status": self.status.value,
            "multiplier": float(self.cash_out_multiplier) if self.cash_out_multiplier else None,
            "payout": float(self.payout) if self.payout is not None else None,
        }


@dataclass
class LiveRound:
    round_id: str
    crash_point: Decimal
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int

    status: RoundStatus = RoundStatus.WAITING
    multiplier: Decimal = ONE
    forced: bool = False
    ticks: int = 0

    # Set once take-off or a forced crash is pending; no new bets after it
    closing: bool = False
    # Placements holding a reservation while their debit commits: user_id -> bet_id
    pending: Dict[int, str] = field(default_factory=dict)
    crashed_at: Optional[datetime] = None

    # Monotonic clock readings
    flight_start_at: Optional[float] = None

    total_bets: int = 0
    total_pool: Decimal = Decimal("0")
    bets: Dict[str, LiveBet] = field(default_factory=dict)

    def active_bet_of(self, user_id: int) -> Optional[LiveBet]:
        for bet in self.bets.values():
            if bet.user_id == user_id and bet.status == BetStatus.ACTIVE:
                return bet
        return None


# =========================
# ENGINE CLASS
# =========================

class CrashGameEngine:
    """
    Owner of the current round. Every read and write of round phase,
    multiplier and bet status happens under self._lock, which makes the
    bet status transition (active -> cashed_out | crashed) a
    compare-and-set that a cash-out and the crash can never both win.

    Lock order: engine lock, then wallet lock. Bet placement debits under
    the wallet lock alone, between two short engine-lock sections.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: Optional[GameConfig] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        wallet_locks: Optional[WalletLocks] = None,
        clock: Callable[[], float] = time.monotonic,
        crash_point_fn: Optional[CrashPointFn] = None,
    ) -> None:
        self.config = config or GameConfig()
        self.broadcaster = broadcaster or EventBroadcaster()
        self.wallet_locks = wallet_locks or WalletLocks()
        self._session_factory = session_factory
        self._clock = clock
        self._crash_point_fn = crash_point_fn or self._fair_crash_point
        self._lock = asyncio.Lock()
        # Signalled whenever a placement reservation is released
        self._placed = asyncio.Condition(self._lock)
        self._unsaved_crash: Optional[LiveRound] = None
        self._round: Optional[LiveRound] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def current_round(self) -> Optional[LiveRound]:
        return self._round

    # =====================================================
    # MATH
    # =====================================================

    def _fair_crash_point(self, server_seed: str, client_seed: str, nonce: int) -> Decimal:
        return crash_point_from_seed(
            server_seed,
            client_seed,
            nonce,
            self.config.house_edge,
            self.config.max_crash,
        )

    def _live_multiplier(self) -> Decimal:
        """
        Multiplier right now: a function of elapsed wall-clock time,
        never below the last value seen, never above the crash point.
        """
        rnd = self._round
        if rnd.status != RoundStatus.FLYING or rnd.flight_start_at is None:
            return rnd.multiplier

        elapsed = self._clock() - rnd.flight_start_at
        computed = multiplier_at(elapsed, self.config.growth_rate)
        return max(rnd.multiplier, min(computed, rnd.crash_point))

    # =====================================================
    # LIFECYCLE
    # =====================================================

    async def open_round(self) -> Dict[str, Any]:
        """
        State: none/CRASHED -> WAITING.
        The crash point is generated and persisted here, before any bet
        can see the round, and is never recomputed.
        """
        async with self._lock:
            if self._round and self._round.status != RoundStatus.CRASHED:
                raise StateError(f"Round {self._round.round_id} still {self._round.status.value}")

            if self._unsaved_crash is not None:
                # Raises while the database is still unavailable
                await self._persist_crash(self._unsaved_crash)
                logger.info(f"Crash of round {self._unsaved_crash.round_id} persisted on retry")
                self._unsaved_crash = None

            round_id = generate_round_id()
            if self.config.server_secret:
                server_seed = derive_server_seed(self.config.server_secret, round_id)
            else:
                server_seed = generate_server_seed()

            async with self._session_factory() as session:
                last_nonce = await session.scalar(select(func.max(GameRound.nonce)))
                nonce = (last_nonce or 0) + 1
                client_seed = self.config.client_seed
                crash_point = self._crash_point_fn(server_seed, client_seed, nonce)

                rnd = LiveRound(
                    round_id=round_id,
                    crash_point=crash_point,
                    server_seed=server_seed,
                    server_seed_hash=hash_sha256(server_seed),
                    client_seed=client_seed,
                    nonce=nonce,
                )
                session.add(
                    GameRound(
                        round_id=rnd.round_id,
                        server_seed=rnd.server_seed,
                        server_seed_hash=rnd.server_seed_hash,
                        client_seed=rnd.client_seed,
                        nonce=rnd.nonce,
                        crash_point=rnd.crash_point,
                        status=RoundStatus.WAITING,
                    )
                )
                await session.commit()

            self._round = rnd
            logger.info(f"Round {round_id} open for bets (nonce {nonce})")

            self.broadcaster.publish(
                "game:new_round",
                {
                    "roundId": rnd.round_id,
                    "status": rnd.status.value,
                    "serverSeedHash": rnd.server_seed_hash,
                    "bettingWindow": self.config.betting_window_sec,
                },
            )
            return self._snapshot()

    async def start_flight(self) -> Dict[str, Any]:
        """State: WAITING -> FLYING. Bets are locked from here on."""
        async with self._placed:
            rnd = self._round
            if not rnd or rnd.status != RoundStatus.WAITING:
                raise StateError("No round waiting to take off")

            rnd.closing = True
            await self._placed.wait_for(lambda: not rnd.pending)
            if rnd.status != RoundStatus.WAITING:
                raise StateError(f"Round {rnd.round_id} crashed before take-off")

            rnd.status = RoundStatus.FLYING
            rnd.flight_start_at = self._clock()

            async with self._session_factory() as session:
                await session.execute(
                    update(GameRound)
                    .where(GameRound.round_id == rnd.round_id)
                    .values(status=RoundStatus.FLYING, started_at=utcnow())
                )
                await session.commit()

            logger.info(f"Round {rnd.round_id} flying ({rnd.total_bets} bets, pool {rnd.total_pool})")
            self.broadcaster.publish("game:start", {"roundId": rnd.round_id})
            return self._snapshot()

    async def tick(self) -> Dict[str, Any]:
        """
        One heartbeat of the flight:
        1. advance the multiplier
        2. settle auto-cashouts the multiplier has reached
        3. broadcast multiplier:update
        4. crash if the crash point is reached
        """
        async with self._lock:
            rnd = self._round
            if not rnd or rnd.status != RoundStatus.FLYING:
                return self._snapshot()

            rnd.multiplier = self._live_multiplier()
            rnd.ticks += 1

            for bet in list(rnd.bets.values()):
                if (
                    bet.status == BetStatus.ACTIVE
                    and bet.auto_cashout is not None
                    and bet.auto_cashout <= rnd.multiplier
                    and bet.auto_cashout < rnd.crash_point
                ):
                    await self._settle_cashout(rnd, bet, bet.auto_cashout, auto=True)

            self.broadcaster.publish(
                "multiplier:update",
                {"roundId": rnd.round_id, "multiplier": float(rnd.multiplier)},
            )

            if rnd.multiplier >= rnd.crash_point:
                await self._crash(rnd)
            elif self.config.checkpoint_every and rnd.ticks % self.config.checkpoint_every == 0:
                await self._checkpoint(rnd)

            return self._snapshot()

    async def crash(self, forced: bool = False) -> Dict[str, Any]:
        """
        Public crash entry point. A forced crash stops the round at its
        last known multiplier and is allowed from WAITING as well.
        """
        async with self._placed:
            rnd = self._round
            if not rnd or rnd.status == RoundStatus.CRASHED:
                return self._snapshot()
            if rnd.status == RoundStatus.WAITING:
                if not forced:
                    raise StateError("Round has not taken off")
                # Let in-flight placements commit so their bets crash with the round
                rnd.closing = True
                await self._placed.wait_for(lambda: not rnd.pending)
                if rnd.status == RoundStatus.CRASHED:
                    return self._snapshot()

            await self._crash(rnd, forced=forced)
            return self._snapshot()

    async def force_crash(self) -> Dict[str, Any]:
        return await self.crash(forced=True)

    async def _crash(self, rnd: LiveRound, forced: bool = False) -> None:
        """
        State: FLYING -> CRASHED (lock held).
        Memory flips first so no cash-out can land after this point. If
        the write fails, open_round() retries it before the next round.
        """
        if not forced:
            rnd.multiplier = rnd.crash_point
        rnd.status = RoundStatus.CRASHED
        rnd.forced = forced
        rnd.crashed_at = utcnow()

        losers = [b for b in rnd.bets.values() if b.status == BetStatus.ACTIVE]
        for bet in losers:
            bet.status = BetStatus.CRASHED

        try:
            await self._persist_crash(rnd)
        except Exception:
            logger.exception(f"Failed to persist crash of round {rnd.round_id}, will retry")
            self._unsaved_crash = rnd

        if forced:
            logger.warning(f"Round {rnd.round_id} force-crashed at {rnd.multiplier}x")
        else:
            logger.info(f"Round {rnd.round_id} crashed at {rnd.crash_point}x ({len(losers)} bets lost)")

        self.broadcaster.publish(
            "game:crash",
            {
                "roundId": rnd.round_id,
                "crashPoint": float(rnd.multiplier),
                "serverSeed": rnd.server_seed,
                "clientSeed": rnd.client_seed,
                "nonce": rnd.nonce,
                "forced": forced,
            },
        )

    async def _persist_crash(self, rnd: LiveRound) -> None:
        """Idempotent: safe to repeat after a failed attempt."""
        async with self._session_factory() as session:
            await session.execute(
                update(Bet)
                .where(Bet.round_id == rnd.round_id, Bet.status == BetStatus.ACTIVE)
                .values(status=BetStatus.CRASHED, resolved_at=rnd.crashed_at)
            )
            await session.execute(
                update(GameRound)
                .where(GameRound.round_id == rnd.round_id)
                .values(
                    status=RoundStatus.CRASHED,
                    final_multiplier=rnd.multiplier,
                    last_multiplier=rnd.multiplier,
                    forced=rnd.forced,
                    crashed_at=rnd.crashed_at,
                )
            )
            await session.commit()

    async def _checkpoint(self, rnd: LiveRound) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(GameRound)
                .where(GameRound.round_id == rnd.round_id)
                .values(last_multiplier=rnd.multiplier)
            )
            await session.commit()

    async def recover(self) -> int:
        """
        Startup recovery: rounds left WAITING or FLYING by a dead process
        are crashed at their last checkpoint and their active bets lost.
        Returns the number of rounds closed.
        """
        async with self._lock:
            now = utcnow()
            async with self._session_factory() as session:
                result = await session.execute(
                    select(GameRound).where(
                        GameRound.status.in_([RoundStatus.WAITING, RoundStatus.FLYING])
                    )
                )
                stale = list(result.scalars())

                for rnd in stale:
                    await session.execute(
                        update(Bet)
                        .where(Bet.round_id == rnd.round_id, Bet.status == BetStatus.ACTIVE)
                        .values(status=BetStatus.CRASHED, resolved_at=now)
                    )
                    rnd.status = RoundStatus.CRASHED
                    rnd.forced = True
                    rnd.final_multiplier = rnd.last_multiplier
                    rnd.crashed_at = now
                    logger.warning(
                        f"Recovered round {rnd.round_id}: force-crashed at {rnd.last_multiplier}x"
                    )

                await session.commit()
            return len(stale)

    # =====================================================
    # BETTING ACTIONS
    # =====================================================

    def _validate_bet(self, amount: Any, auto_cashout: Any) -> tuple[Decimal, Optional[Decimal]]:
        amount_dec = parse_decimal(amount, "amount")
        if amount_dec < self.config.min_bet:
            raise ValidationError(f"Minimum bet amount is {self.config.min_bet}")
        if amount_dec > self.config.max_bet:
            raise ValidationError(f"Maximum bet amount is {self.config.max_bet}")
        amount_dec = require_cents(amount_dec, "amount")

        auto_dec = None
        if auto_cashout is not None:
            auto_dec = parse_decimal(auto_cashout, "autoCashout")
            if auto_dec < self.config.min_auto_cashout:
                raise ValidationError(
                    f"Auto cash-out must be at least {self.config.min_auto_cashout}x"
                )
            if auto_dec > self.config.max_crash:
                raise ValidationError(f"Auto cash-out cannot exceed {self.config.max_crash}x")
            auto_dec = require_cents(auto_dec, "autoCashout")

        return amount_dec, auto_dec

    async def place_bet(
        self,
        external_id: str,
        amount: Any,
        auto_cashout: Any = None,
        name: Optional[str] = None,
    ) -> LiveBet:
        """
        Debit the wallet and register the bet in one DB transaction.
        Only accepted while the round is WAITING.

        The engine lock is held only to reserve a slot in the round and
        to register the committed bet; the debit runs under the wallet
        lock alone. Take-off waits for open reservations.
        """
        amount_dec, auto_dec = self._validate_bet(amount, auto_cashout)

        async with self._session_factory() as session:
            user = await get_or_create_user(
                session,
                external_id,
                name,
                self.config.starting_balance,
                self.config.wallet_limits(),
            )

        async with self._lock:
            rnd = self._round
            if not rnd or rnd.status != RoundStatus.WAITING or rnd.closing:
                state = rnd.status.value if rnd else "offline"
                raise RoundNotAcceptingBets(f"Round is not accepting bets (status: {state})")

            if rnd.active_bet_of(user.id) or user.id in rnd.pending:
                raise DuplicateActiveBet("You already have an active bet on this round")

            bet = LiveBet(
                bet_id=uuid.uuid4().hex,
                round_id=rnd.round_id,
                user_id=user.id,
                external_id=external_id,
                user_name=user.name,
                amount=amount_dec,
                auto_cashout=auto_dec,
            )
            rnd.pending[user.id] = bet.bet_id

        committed = False
        try:
            async with self.wallet_locks.for_user(user.id):
                async with self._session_factory() as session:
                    await check_betting_access(session, user.id, self.config.session_break_sec)
                    await debit(
                        session,
                        user.id,
                        amount_dec,
                        TransactionType.BET,
                        round_id=rnd.round_id,
                        bet_id=bet.bet_id,
                        reference="bet_entry",
                    )
                    session.add(
                        Bet(
                            bet_id=bet.bet_id,
                            user_id=user.id,
                            round_id=rnd.round_id,
                            amount=amount_dec,
                            auto_cashout=auto_dec,
                            status=BetStatus.ACTIVE,
                        )
                    )
                    await session.execute(
                        update(GameRound)
                        .where(GameRound.round_id == rnd.round_id)
                        .values(
                            total_bets=GameRound.total_bets + 1,
                            total_pool=GameRound.total_pool + amount_dec,
                        )
                    )
                    await session.commit()
                    committed = True
        finally:
            async with self._placed:
                del rnd.pending[user.id]
                if committed:
                    self._register_bet(rnd, bet)
                self._placed.notify_all()

        return bet

    def _register_bet(self, rnd: LiveRound, bet: LiveBet) -> None:
        """Committed bet joins the live round (lock held)."""
        rnd.bets[bet.bet_id] = bet
        rnd.total_bets += 1
        rnd.total_pool += bet.amount

        logger.info(f"Bet placed: {bet.amount} by {bet.external_id} on round {rnd.round_id}")

        self.broadcaster.publish(
            "bet:placed",
            {
                "roundId": rnd.round_id,
                "betId": bet.bet_id,
                "amount": float(bet.amount),
                "autoCashout": float(bet.auto_cashout) if bet.auto_cashout else None,
                "user": {"id": bet.external_id, "name": bet.user_name},
            },
        )
        self.broadcaster.publish("bet:personal_placed", bet.to_dict(), user_id=bet.external_id)

    async def cash_out(self, external_id: str, bet_id: str) -> LiveBet:
        """
        Claim the multiplier at the instant this request holds the lock.
        Loses to the crash if the round has already flipped.
        """
        async with self._lock:
            rnd = self._round
            bet = rnd.bets.get(bet_id) if rnd else None

            if bet is None:
                await self._reject_stale_bet(external_id, bet_id)
            if bet.external_id != external_id:
                raise BetNotFound("Bet not found")

            if bet.status == BetStatus.CRASHED:
                raise RoundAlreadyCrashed("Too late, the round already crashed")
            if bet.status == BetStatus.CASHED_OUT:
                raise BetAlreadyResolved("Bet already cashed out")
            if rnd.status != RoundStatus.FLYING:
                raise RoundNotInFlight("Round has not taken off yet")

            multiplier = self._live_multiplier()
            if multiplier >= rnd.crash_point:
                # The ticker has not caught up yet; the server clock wins
                rnd.multiplier = rnd.crash_point
                await self._crash(rnd)
                raise RoundAlreadyCrashed("Too late, the round already crashed")

            rnd.multiplier = multiplier
            await self._settle_cashout(rnd, bet, multiplier)
            return bet

    async def _reject_stale_bet(self, external_id: str, bet_id: str) -> None:
        """Bets of earlier rounds are already resolved; say how."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Bet, User.external_id)
                .join(User, Bet.user_id == User.id)
                .where(Bet.bet_id == bet_id)
            )
            row = result.first()

        if row is None or row[1] != external_id:
            raise BetNotFound("Bet not found")
        if row[0].status == BetStatus.CASHED_OUT:
            raise BetAlreadyResolved("Bet already cashed out")
        raise RoundAlreadyCrashed("Too late, the round already crashed")

    async def _settle_cashout(
        self,
        rnd: LiveRound,
        bet: LiveBet,
        multiplier: Decimal,
        auto: bool = False,
    ) -> None:
        """
        active -> cashed_out plus the payout credit, in one DB
        transaction. The conditional UPDATE is the compare-and-set.
        """
        payout = bet.amount * multiplier
        now = utcnow()

        async with self.wallet_locks.for_user(bet.user_id):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(Bet)
                    .where(Bet.bet_id == bet.bet_id, Bet.status == BetStatus.ACTIVE)
                    .values(
                        status=BetStatus.CASHED_OUT,
                        cash_out_multiplier=multiplier,
                        payout=payout,
                        resolved_at=now,
                    )
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise BetAlreadyResolved("Bet already resolved")

                await credit(
                    session,
                    bet.user_id,
                    payout,
                    TransactionType.PAYOUT,
                    round_id=rnd.round_id,
                    bet_id=bet.bet_id,
                    reference=f"{'auto_' if auto else ''}cashout x{multiplier}",
                )
                await session.commit()

        bet.status = BetStatus.CASHED_OUT
        bet.cash_out_multiplier = multiplier
        bet.payout = payout

        logger.info(f"Cashout{' (auto)' if auto else ''}: {payout} for bet {bet.bet_id} at {multiplier}x")

        self.broadcaster.publish(
            "bet:cashout",
            {
                "roundId": rnd.round_id,
                "betId": bet.bet_id,
                "payout": float(payout),
                "multiplier": float(multiplier),
                "auto": auto,
                "user": {"id": bet.external_id, "name": bet.user_name},
            },
        )
        self.broadcaster.publish(
            "bet:personal_cashout",
            {
                "betId": bet.bet_id,
                "payout": float(payout),
                "multiplier": float(multiplier),
                "profit": float(payout - bet.amount),
            },
            user_id=bet.external_id,
        )

    # =====================================================
    # QUERIES
    # =====================================================

    def _snapshot(self) -> Dict[str, Any]:
        rnd = self._round
        if not rnd:
            return {
                "roundId": None,
                "status": "offline",
                "multiplier": 1.0,
                "totalBets": 0,
                "totalPool": 0.0,
            }

        data = {
            "roundId": rnd.round_id,
            "status": rnd.status.value,
            "multiplier": float(rnd.multiplier),
            "totalBets": rnd.total_bets,
            "totalPool": float(rnd.total_pool),
            "serverSeedHash": rnd.server_seed_hash,
        }
        if rnd.status == RoundStatus.CRASHED:
            data["crashPoint"] = float(rnd.multiplier)
        return data

    async def snapshot(self) -> Dict[str, Any]:
        """Current round for late joiners (the push channel does not replay)."""
        async with self._lock:
            return self._snapshot()

    async def join(self, user_id: Optional[str] = None) -> tuple[Subscriber, Dict[str, Any]]:
        """
        Subscribe and snapshot in one step. Round events are published
        under the engine lock, so everything queued for the subscriber is
        newer than the snapshot; "seq" is the last event it already covers.
        """
        async with self._lock:
            subscriber = self.broadcaster.subscribe(user_id)
            return subscriber, {**self._snapshot(), "seq": self.broadcaster.last_seq}

    async def active_bets(self, external_id: str) -> list[Dict[str, Any]]:
        async with self._lock:
            rnd = self._round
            if not rnd:
                return []
            return [
                bet.to_dict()
                for bet in rnd.bets.values()
                if bet.external_id == external_id and bet.status == BetStatus.ACTIVE
            ]

    # =====================================================
    # ROUND LOOP
    # =====================================================

    async def play_round(self) -> None:
        """One full round: open, betting window, flight until crash."""
        await self.open_round()
        await asyncio.sleep(self.config.betting_window_sec)
        await self.start_flight()

        while True:
            state = await self.tick()
            if state["status"] == RoundStatus.CRASHED.value:
                return
            await asyncio.sleep(self.config.tick_interval_sec)

    async def run(self) -> None:
        """
        Ticks are wall-clock driven; a fault inside a round is fatal to
        that round only.
        """
        logger.info("Round loop started")
        while not self._stopping:
            try:
                await self.play_round()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Round loop fault, force-crashing current round")
                await self.force_crash()

            await asyncio.sleep(self.config.cooldown_sec)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run(), name="aviator-round-loop")
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Round loop stopped")
