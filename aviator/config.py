# config.py
"""
Runtime configuration for the Aviator engine.

All tunables are read from the environment once, at startup. Tests build
GameConfig directly with short timings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


@dataclass
class GameConfig:
    # --- STORAGE ---
    database_url: str = "sqlite+aiosqlite:///./aviator.db"
    db_echo: bool = False

    # Balance given to a wallet the first time a user is seen
    starting_balance: Decimal = Decimal("0.00")

    # --- PROVABLY FAIR ---
    # Empty secret means a fresh random seed per round
    server_secret: str = ""
    client_seed: str = "public"
    house_edge: Decimal = Decimal("0.01")
    max_crash: Decimal = Decimal("1000.00")

    # --- GAMEPLAY SPEED ---
    # Multiplier = e^(growth_rate * seconds); 0.06 reaches 2.00x in ~11.5s
    growth_rate: float = 0.06
    betting_window_sec: float = 5.0
    tick_interval_sec: float = 0.1
    cooldown_sec: float = 3.0

    # Persist the live multiplier every N ticks for crash recovery
    checkpoint_every: int = 10

    # --- LIMITS ---
    min_bet: Decimal = Decimal("10")
    max_bet: Decimal = Decimal("100000")
    min_auto_cashout: Decimal = Decimal("1.01")
    min_withdrawal: Decimal = Decimal("10")

    # --- RESPONSIBLE GAMING (defaults for new wallets, 0 disables) ---
    deposit_limit: Decimal = Decimal("1000")
    loss_limit: Decimal = Decimal("500")
    session_time_limit_sec: int = 3600
    # Idle gap after which the next bet starts a fresh session
    session_break_sec: int = 900

    # --- API ---
    leaderboard_limit: int = 50
    cors_origins: str = "*"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "GameConfig":
        """Load settings from environment variables.

        Every field maps to the upper-cased variable of the same name
        (DATABASE_URL, HOUSE_EDGE, BETTING_WINDOW_SEC, ...).
        """

        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            db_echo=os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes"),
            starting_balance=_env_decimal("STARTING_BALANCE", "0.00"),
            server_secret=os.getenv("SERVER_SECRET", ""),
            client_seed=os.getenv("CLIENT_SEED", cls.client_seed),
            house_edge=_env_decimal("HOUSE_EDGE", "0.01"),
            max_crash=_env_decimal("MAX_CRASH", "1000.00"),
            growth_rate=_env_float("GROWTH_RATE", "0.06"),
            betting_window_sec=_env_float("BETTING_WINDOW_SEC", "5"),
            tick_interval_sec=_env_float("TICK_INTERVAL_SEC", "0.1"),
            cooldown_sec=_env_float("COOLDOWN_SEC", "3"),
            checkpoint_every=int(os.getenv("CHECKPOINT_EVERY", "10")),
            min_bet=_env_decimal("MIN_BET", "10"),
            max_bet=_env_decimal("MAX_BET", "100000"),
            min_auto_cashout=_env_decimal("MIN_AUTO_CASHOUT", "1.01"),
            min_withdrawal=_env_decimal("MIN_WITHDRAWAL", "10"),
            deposit_limit=_env_decimal("DEPOSIT_LIMIT", "1000"),
            loss_limit=_env_decimal("LOSS_LIMIT", "500"),
            session_time_limit_sec=int(os.getenv("SESSION_TIME_LIMIT_SEC", "3600")),
            session_break_sec=int(os.getenv("SESSION_BREAK_SEC", "900")),
            leaderboard_limit=int(os.getenv("LEADERBOARD_LIMIT", "50")),
            cors_origins=os.getenv("CORS_ORIGINS", "*"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def wallet_limits(self) -> dict:
        """Column values for a wallet created with the default limits."""
        return {
            "deposit_limit": self.deposit_limit or None,
            "loss_limit": self.loss_limit or None,
            "session_time_limit": self.session_time_limit_sec,
        }

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
