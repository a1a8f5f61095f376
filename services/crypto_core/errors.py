# crypto_core/errors.py
from __future__ import annotations


class DoubleSpendError(ValueError):
    """Raised when a nullifier has already been claimed by another proof."""

    def __init__(self, nullifier: str):
        super().__init__(f"Double-spend detected: nullifier {nullifier[:16]}… already used")
        self.nullifier = nullifier


class AmountOutOfRangeError(ValueError):
    """Raised before any state changes when a strict proof's amount is outside its band."""

    def __init__(self, amount, lo, hi):
        super().__init__(f"amount {amount} outside [{lo}, {hi}]")
        self.amount = amount
        self.lo = lo
        self.hi = hi
