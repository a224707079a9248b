# history.py
"""
Round history, per-user bet history, leaderboards and fairness checks.

Rounds and bets are persisted as they change, so everything here is
computed on read straight from the game tables.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import GameConfig
from .db import Bet, BetStatus, GameRound, RoundStatus, User, get_user
from .errors import RoundNotFound, ValidationError
from .ledger import validate_page
from .utils import MONEY_PLACES, as_utc, crash_point_from_seed, utcnow, verify_provably_fair

PERIODS = ("daily", "weekly", "all")


def _money(value: Any) -> float:
    return float(Decimal(str(value or 0)).quantize(MONEY_PLACES))


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def period_start(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Start of the leaderboard window: midnight today for daily, the last
    Sunday midnight for weekly, None for all-time.
    """
    if period not in PERIODS:
        raise ValidationError(f"period must be one of {', '.join(PERIODS)}")

    now = now or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        return midnight
    if period == "weekly":
        days_since_sunday = (now.weekday() + 1) % 7
        return midnight - timedelta(days=days_since_sunday)
    return None


class RoundHistory:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: GameConfig,
    ) -> None:
        self._session_factory = session_factory
        self.config = config

    async def bet_history(self, external_id: str, page: int = 1, limit: int = 20) -> dict[str, Any]:
        """Newest first, with pagination {page, limit, total, pages}."""
        validate_page(page, limit)

        async with self._session_factory() as session:
            user = await get_user(session, external_id)
            if user is None:
                bets, total = [], 0
            else:
                total = await session.scalar(
                    select(func.count()).select_from(Bet).where(Bet.user_id == user.id)
                ) or 0
                result = await session.execute(
                    select(Bet, GameRound)
                    .join(GameRound, Bet.round_id == GameRound.round_id)
                    .where(Bet.user_id == user.id)
                    .order_by(Bet.placed_at.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
                bets = [self._bet_row(bet, rnd) for bet, rnd in result.all()]

        return {
            "bets": bets,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
        }

    @staticmethod
    def _bet_row(bet: Bet, rnd: GameRound) -> dict[str, Any]:
        crashed = rnd.status == RoundStatus.CRASHED
        return {
            "betId": bet.bet_id,
            "roundId": bet.round_id,
            "amount": _money(bet.amount),
            "autoCashout": float(bet.auto_cashout) if bet.auto_cashout else None,
            "status": bet.status.value,
            "multiplier": float(bet.cash_out_multiplier) if bet.cash_out_multiplier else None,
            "payout": _money(bet.payout) if bet.payout is not None else 0.0,
            "crashPoint": float(rnd.final_multiplier) if crashed and rnd.final_multiplier else None,
            "placedAt": _iso(bet.placed_at),
            "resolvedAt": _iso(bet.resolved_at),
        }

    async def leaderboard(self, period: str = "daily", now: Optional[datetime] = None) -> list[dict[str, Any]]:
        """
        Ranked by total winnings (payout - stake) over cashed-out bets
        resolved inside the period.
        """
        start = period_start(period, now)
        profit = Bet.payout - Bet.amount

        query = (
            select(
                User.external_id,
                User.name,
                func.sum(profit).label("total_winnings"),
                func.count(Bet.bet_id).label("total_bets"),
                func.max(profit).label("biggest_win"),
            )
            .join(User, Bet.user_id == User.id)
            .where(Bet.status == BetStatus.CASHED_OUT)
            .group_by(User.id, User.external_id, User.name)
            .order_by(func.sum(profit).desc())
            .limit(self.config.leaderboard_limit)
        )
        if start is not None:
            query = query.where(Bet.resolved_at >= start)

        async with self._session_factory() as session:
            result = await session.execute(query)
            rows = result.all()

        return [
            {
                "rank": rank,
                "userId": external_id,
                "name": name,
                "totalWinnings": _money(total_winnings),
                "totalBets": total_bets,
                "biggestWin": _money(biggest_win),
            }
            for rank, (external_id, name, total_winnings, total_bets, biggest_win) in enumerate(rows, 1)
        ]

    async def recent_rounds(self, limit: int = 20) -> list[dict[str, Any]]:
        validate_page(1, limit)
        async with self._session_factory() as session:
            result = await session.execute(
                select(GameRound)
                .where(GameRound.status == RoundStatus.CRASHED)
                .order_by(GameRound.crashed_at.desc())
                .limit(limit)
            )
            return [
                {
                    "roundId": rnd.round_id,
                    "crashPoint": float(rnd.final_multiplier or rnd.crash_point),
                    "forced": rnd.forced,
                    "totalBets": rnd.total_bets,
                    "totalPool": _money(rnd.total_pool),
                    "crashedAt": _iso(rnd.crashed_at),
                }
                for rnd in result.scalars()
            ]

    async def user_stats(self, external_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            user = await get_user(session, external_id)
            if user is None:
                return {"totalBets": 0, "totalWagered": 0.0, "totalWinnings": 0.0,
                        "successfulCashouts": 0, "biggestWin": 0.0}

            total_bets, total_wagered = (
                await session.execute(
                    select(func.count(Bet.bet_id), func.coalesce(func.sum(Bet.amount), 0))
                    .where(Bet.user_id == user.id)
                )
            ).one()
            cashouts, winnings, biggest = (
                await session.execute(
                    select(
                        func.count(Bet.bet_id),
                        func.coalesce(func.sum(Bet.payout - Bet.amount), 0),
                        func.coalesce(func.max(Bet.payout - Bet.amount), 0),
                    )
                    .where(Bet.user_id == user.id, Bet.status == BetStatus.CASHED_OUT)
                )
            ).one()

        return {
            "totalBets": total_bets,
            "totalWagered": _money(total_wagered),
            "totalWinnings": _money(winnings),
            "successfulCashouts": cashouts,
            "biggestWin": _money(biggest),
        }

    async def verify_round(self, round_id: str) -> dict[str, Any]:
        """Recompute a crashed round's crash point from its revealed seed."""
        async with self._session_factory() as session:
            rnd = await session.get(GameRound, round_id)

        if rnd is None:
            raise RoundNotFound(f"Round {round_id} not found")
        if rnd.status != RoundStatus.CRASHED:
            raise ValidationError("The server seed is revealed once the round has crashed")

        calculated = crash_point_from_seed(
            rnd.server_seed,
            rnd.client_seed,
            rnd.nonce,
            self.config.house_edge,
            self.config.max_crash,
        )
        return {
            "roundId": rnd.round_id,
            "serverSeed": rnd.server_seed,
            "serverSeedHash": rnd.server_seed_hash,
            "clientSeed": rnd.client_seed,
            "nonce": rnd.nonce,
            "calculatedCrashPoint": float(calculated),
            "actualCrashPoint": float(rnd.crash_point),
            "isFair": verify_provably_fair(
                rnd.server_seed,
                rnd.server_seed_hash,
                rnd.client_seed,
                rnd.nonce,
                rnd.crash_point,
                self.config.house_edge,
                self.config.max_crash,
            ),
        }
