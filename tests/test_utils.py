from decimal import Decimal

import pytest

from aviator.errors import ValidationError
from aviator.utils import (
    crash_point_from_hash,
    crash_point_from_seed,
    hash_sha256,
    multiplier_at,
    parse_decimal,
    require_cents,
    verify_provably_fair,
)

SEED = "a" * 64


def test_crash_point_is_deterministic():
    first = crash_point_from_seed(SEED, "public", 7)
    assert first == crash_point_from_seed(SEED, "public", 7)
    assert first >= Decimal("1.00")
    assert first == first.quantize(Decimal("0.01"))


def test_crash_point_bounds():
    # X = 0 gives the house edge floor, clamped up to 1.00
    assert crash_point_from_hash("0" * 64) == Decimal("1.00")
    # X close to 1 explodes and is clamped to the cap
    assert crash_point_from_hash("f" * 64, max_crash=Decimal("1000.00")) == Decimal("1000.00")
    # X = 0.5 -> 0.99 / 0.5
    assert crash_point_from_hash("8" + "0" * 63) == Decimal("1.98")


def test_crash_distribution_tracks_house_edge():
    trials = 4000
    doubled = sum(
        1 for nonce in range(trials)
        if crash_point_from_seed(SEED, "public", nonce) >= 2
    )
    # P(crash >= 2) = 0.99 / 2
    assert abs(doubled / trials - 0.495) < 0.04


def test_multiplier_curve():
    assert multiplier_at(0, 0.06) == Decimal("1.00")
    assert multiplier_at(-3, 0.06) == Decimal("1.00")
    assert multiplier_at(5, 0.06) == Decimal("1.34")
    assert multiplier_at(12, 0.06) == Decimal("2.05")
    assert multiplier_at(11, 0.06) < Decimal("2.00") <= multiplier_at(12, 0.06)


def test_verify_provably_fair():
    crash = crash_point_from_seed(SEED, "public", 3)
    seed_hash = hash_sha256(SEED)

    assert verify_provably_fair(SEED, seed_hash, "public", 3, crash)
    assert not verify_provably_fair(SEED, seed_hash, "public", 4, crash + 1)
    assert not verify_provably_fair(SEED, hash_sha256("other"), "public", 3, crash)


def test_parse_decimal_and_cents():
    assert parse_decimal(0.1) == Decimal("0.1")
    assert require_cents(Decimal("12.5")) == Decimal("12.50")

    for bad in ("abc", None, "NaN", "Infinity"):
        with pytest.raises(ValidationError):
            parse_decimal(bad)
    with pytest.raises(ValidationError):
        require_cents(Decimal("1.005"))
