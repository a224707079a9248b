# utils.py
"""
Utility functions for the Aviator engine

Includes:
- Cryptographic & Provably Fair helpers
- Decimal quantization for money and multipliers
- Miscellaneous helpers (ids, clocks)
"""

from __future__ import annotations

import hashlib
import hmac
import math
import secrets
import uuid
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional, Union

from .errors import ValidationError

NumberType = Union[float, Decimal, int, str]

# Storage scale for balances and payouts. Four places keep A * M exact
# for two-place amounts and two-place multipliers.
MONEY_PLACES = Decimal("0.0001")
CENTS = Decimal("0.01")
ONE = Decimal("1.00")

# 52 bits of the HMAC digest feed the crash distribution
_HASH_HEX_DIGITS = 13
_HASH_SPACE = Decimal(2 ** 52)

# =========================
# RANDOM & PROVABLY FAIR
# =========================

def generate_server_seed(length: int = 32) -> str:
    """
    Generate a cryptographically secure random server seed (hex).
    Used as the secret key in HMAC calculations.
    """
    return secrets.token_hex(length)


def derive_server_seed(secret: str, round_id: str) -> str:
    """
    Deterministic per-round seed: HMAC(server secret, round id).
    Reproducible for audit by whoever holds the secret, unpredictable to
    everyone else.
    """
    return hmac_sha256(secret, round_id)


def generate_round_id() -> str:
    return uuid.uuid4().hex


def hmac_sha256(key: str, message: str) -> str:
    """
    Compute HMAC-SHA256 hash.

    Args:
        key: The secret key (e.g., server_seed).
        message: The data to sign (e.g., client_seed:nonce).

    Returns:
        Hexadecimal string of the hash.
    """
    return hmac.new(
        key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def hash_sha256(value: str) -> str:
    """
    Compute standard SHA256 hash of a string.
    Published before the round flies so the seed cannot be swapped later.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def crash_point_from_hash(
    hash_hex: str,
    house_edge: Decimal = Decimal("0.01"),
    max_crash: Optional[Decimal] = None,
) -> Decimal:
    """
    Map a hex digest onto the crash curve.

    X is uniform in [0, 1) from the first 52 bits; the crash point is
    (1 - edge) / (1 - X), floored to cents and clamped to [1.00, max_crash].
    P(crash >= x) = (1 - edge) / x for x >= 1.
    """
    r = int(hash_hex[:_HASH_HEX_DIGITS], 16)
    x = Decimal(r) / _HASH_SPACE

    crash = (Decimal(1) - house_edge) / (Decimal(1) - x)
    crash = crash.quantize(CENTS, rounding=ROUND_DOWN)

    crash = max(crash, ONE)
    if max_crash is not None:
        crash = min(crash, max_crash)
    return crash


def crash_point_from_seed(
    server_seed: str,
    client_seed: str,
    nonce: int,
    house_edge: Decimal = Decimal("0.01"),
    max_crash: Optional[Decimal] = None,
) -> Decimal:
    """Pure function of the seeds: same inputs, same crash point."""
    digest = hmac_sha256(server_seed, f"{client_seed}:{nonce}")
    return crash_point_from_hash(digest, house_edge, max_crash)


def verify_provably_fair(
    server_seed: str,
    server_seed_hash: str,
    client_seed: str,
    nonce: int,
    crash_point: Decimal,
    house_edge: Decimal = Decimal("0.01"),
    max_crash: Optional[Decimal] = None,
) -> bool:
    """
    True if the revealed seed matches its published hash and reproduces
    the recorded crash point.
    """
    if not hmac.compare_digest(hash_sha256(server_seed), server_seed_hash):
        return False
    expected = crash_point_from_seed(
        server_seed, client_seed, nonce, house_edge, max_crash
    )
    return expected == crash_point


# =========================
# DECIMAL HELPERS
# =========================

def multiplier_at(elapsed_sec: float, growth_rate: float) -> Decimal:
    """
    Pure function: time -> multiplier.
    Formula: e^(growth_rate * seconds), floored to cents.
    """
    if elapsed_sec <= 0:
        return ONE

    growth = math.exp(growth_rate * elapsed_sec)
    return Decimal(growth).quantize(CENTS, rounding=ROUND_DOWN)


def to_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_PLACES, rounding=ROUND_DOWN)


def parse_decimal(value: NumberType, field: str = "amount") -> Decimal:
    """
    Strictly convert API input to Decimal.
    Floats go through str() so 0.1 stays 0.1.
    """
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}") from None

    if not result.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}")
    return result


def require_cents(value: Decimal, field: str = "amount") -> Decimal:
    """Reject values with more than two decimal places."""
    if value != value.quantize(CENTS):
        raise ValidationError(f"{field} supports at most 2 decimal places")
    return value.quantize(CENTS)


# =========================
# MISC HELPERS
# =========================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
