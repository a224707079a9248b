import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from aviator.errors import RoundNotFound, ValidationError
from aviator.history import RoundHistory, period_start
from aviator.utils import utcnow


@pytest.fixture
def history(session_factory, config):
    return RoundHistory(session_factory, config)


async def play(engine, clock, bets):
    """One round at the engine's fixed crash point. bets: (user, amount, auto)."""
    await engine.open_round()
    placed = [await engine.place_bet(user, amount, auto) for user, amount, auto in bets]
    await engine.start_flight()
    clock.advance(2)
    await engine.tick()
    clock.advance(30)
    await engine.tick()
    return placed


def test_bet_history_paginates_newest_first(make_engine, ledger, clock, history):
    async def scenario():
        engine = make_engine("1.20")
        await ledger.deposit("alice", "100")
        won, = await play(engine, clock, [("alice", 10, "1.10")])
        lost, = await play(engine, clock, [("alice", 20, None)])

        first = await history.bet_history("alice", page=1, limit=1)
        assert first["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
        row = first["bets"][0]
        assert row["betId"] == lost.bet_id
        assert row["status"] == "crashed"
        assert row["payout"] == 0.0
        assert row["crashPoint"] == 1.2

        second = await history.bet_history("alice", page=2, limit=1)
        row = second["bets"][0]
        assert row["betId"] == won.bet_id
        assert row["status"] == "cashed_out"
        assert row["multiplier"] == 1.1
        assert row["payout"] == 11.0

        empty = await history.bet_history("nobody")
        assert empty["bets"] == []
        assert empty["pagination"]["total"] == 0

    asyncio.run(scenario())


def test_leaderboard_ranks_by_winnings(make_engine, ledger, clock, history):
    async def scenario():
        engine = make_engine("3.00")
        for user in ("alice", "bob", "carol"):
            await ledger.deposit(user, "1000")

        await play(engine, clock, [
            ("alice", 100, "1.10"),
            ("bob", 100, "1.05"),
            ("carol", 100, None),
        ])
        await play(engine, clock, [("bob", 200, "1.10")])

        board = await history.leaderboard("all")
        assert [(r["rank"], r["userId"]) for r in board] == [(1, "bob"), (2, "alice")]
        assert board[0]["totalWinnings"] == 25.0
        assert board[0]["totalBets"] == 2
        assert board[0]["biggestWin"] == 20.0
        assert board[1]["totalWinnings"] == 10.0

        assert len(await history.leaderboard("daily")) == 2
        assert await history.leaderboard("daily", now=utcnow() + timedelta(days=2)) == []

        with pytest.raises(ValidationError):
            await history.leaderboard("monthly")

    asyncio.run(scenario())


def test_period_start_windows():
    wednesday = datetime(2026, 10, 21, 15, 30, tzinfo=timezone.utc)
    sunday = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)

    assert period_start("daily", wednesday) == datetime(2026, 10, 21, tzinfo=timezone.utc)
    assert period_start("weekly", wednesday) == datetime(2026, 10, 18, tzinfo=timezone.utc)
    assert period_start("weekly", sunday) == datetime(2026, 10, 18, tzinfo=timezone.utc)
    assert period_start("all", wednesday) is None


def test_recent_rounds_and_user_stats(make_engine, ledger, clock, history):
    async def scenario():
        engine = make_engine("1.20")
        await ledger.deposit("dave", "100")
        await play(engine, clock, [("dave", 10, "1.10")])
        await play(engine, clock, [("dave", 20, None)])

        rounds = await history.recent_rounds(limit=5)
        assert len(rounds) == 2
        assert all(r["crashPoint"] == 1.2 for r in rounds)
        assert rounds[0]["totalBets"] == 1
        assert rounds[0]["totalPool"] == 20.0
        assert rounds[1]["totalPool"] == 10.0

        stats = await history.user_stats("dave")
        assert stats == {
            "totalBets": 2,
            "totalWagered": 30.0,
            "totalWinnings": 1.0,
            "successfulCashouts": 1,
            "biggestWin": 1.0,
        }

    asyncio.run(scenario())


def test_verify_round(make_engine, history):
    async def scenario():
        engine = make_engine(None)
        opened = await engine.open_round()

        with pytest.raises(ValidationError):
            await history.verify_round(opened["roundId"])

        await engine.force_crash()
        result = await history.verify_round(opened["roundId"])

        assert result["isFair"] is True
        assert result["calculatedCrashPoint"] == result["actualCrashPoint"]
        assert result["nonce"] == 1

        with pytest.raises(RoundNotFound):
            await history.verify_round("missing")

    asyncio.run(scenario())
