# crypto_core/range_proof.py
# Hash-committed range assertion. Not hiding: amountHash can be brute-forced
# over plausible payment amounts, and `verified` is set by plain comparison.
from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any, Dict, Mapping, Tuple

from services.crypto_core.hashing import hash_fields, sha256_hex

AMOUNT_DEC = Decimal("0.000000001")
DEFAULT_TOLERANCE = Decimal("0.05")
MIN_ABS_TOLERANCE = Decimal("0.00000001")


def _dec(x: Any) -> Decimal:
    return Decimal(str(x))


def tolerance_band(expected_amount: Any, tolerance: Any = DEFAULT_TOLERANCE) -> Tuple[Decimal, Decimal]:
    """
    Inclusive [lo, hi] around `expected_amount`, on the 9-decimal lamport grid.

    The half-width is max(expected * tolerance, MIN_ABS_TOLERANCE). Bounds are
    rounded inwards so that an amount on the grid is inside the band exactly
    when |amount - expected| <= half-width.
    """
    expected = _dec(expected_amount).quantize(AMOUNT_DEC)
    allowed = max(expected * _dec(tolerance), MIN_ABS_TOLERANCE)
    lo = (expected - allowed).quantize(AMOUNT_DEC, rounding=ROUND_CEILING)
    hi = (expected + allowed).quantize(AMOUNT_DEC, rounding=ROUND_FLOOR)
    return lo, hi


def within_band(amount: Any, expected_amount: Any, tolerance: Any = DEFAULT_TOLERANCE) -> bool:
    lo, hi = tolerance_band(expected_amount, tolerance)
    return lo <= _dec(amount) <= hi


def generate_range_proof(amount: Any, min_amount: Any, max_amount: Any) -> Dict[str, Any]:
    amount_hash = sha256_hex(f"amount:{amount}")
    min_hash = sha256_hex(f"min:{min_amount}")
    max_hash = sha256_hex(f"max:{max_amount}")
    return {
        "amountHash": amount_hash,
        "minHash": min_hash,
        "maxHash": max_hash,
        "rangeCommitment": hash_fields(amount_hash, min_hash, max_hash),
        "verified": bool(_dec(min_amount) <= _dec(amount) <= _dec(max_amount)),
    }


def verify_range_proof(proof: Mapping[str, Any], expected_min: Any, expected_max: Any) -> bool:
    if not proof or not proof.get("rangeCommitment") or not proof.get("amountHash"):
        return False
    expected = hash_fields(
        proof["amountHash"],
        sha256_hex(f"min:{expected_min}"),
        sha256_hex(f"max:{expected_max}"),
    )
    return proof["rangeCommitment"] == expected and proof.get("verified") is True
