import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.pool import NullPool

from aviator.app import create_app
from aviator.broadcast import EventBroadcaster
from aviator.config import GameConfig
from aviator.db import create_db_engine, create_session_factory, init_db
from aviator.engine import CrashGameEngine
from aviator.ledger import WalletLedger, WalletLocks


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedCrash:
    """Crash point generator returning a chosen value."""

    def __init__(self, value: str) -> None:
        self.value = Decimal(value)

    def __call__(self, server_seed: str, client_seed: str, nonce: int) -> Decimal:
        return self.value


@pytest.fixture
def config():
    return GameConfig(
        betting_window_sec=0,
        tick_interval_sec=0,
        cooldown_sec=0,
        checkpoint_every=1,
    )


@pytest.fixture
def db_engine(tmp_path):
    # NullPool: every asyncio.run() gets fresh connections on its own loop
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'aviator.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))
    return engine


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broadcaster():
    return EventBroadcaster()


@pytest.fixture
def wallet_locks():
    return WalletLocks()


@pytest.fixture
def make_engine(session_factory, config, broadcaster, wallet_locks, clock):
    def factory(crash_point="3.00"):
        return CrashGameEngine(
            session_factory,
            config,
            broadcaster=broadcaster,
            wallet_locks=wallet_locks,
            clock=clock,
            crash_point_fn=FixedCrash(crash_point) if crash_point else None,
        )

    return factory


@pytest.fixture
def ledger(session_factory, config, wallet_locks):
    return WalletLedger(session_factory, config, wallet_locks)


@pytest.fixture
def make_app(db_engine, config, clock):
    """App wired to the test database; rounds are driven by hand."""

    def factory(crash_point="3.00"):
        return create_app(
            config,
            db_engine=db_engine,
            clock=clock,
            crash_point_fn=FixedCrash(crash_point),
            run_loop=False,
        )

    return factory
