# oracle/errors.py
from __future__ import annotations


class TransactionSourceError(RuntimeError):
    """RPC/transport failure talking to the chain; recoverable."""


class PersistenceError(RuntimeError):
    """The payment store failed to save, load or delete a record."""


class PriceUnavailableError(RuntimeError):
    """No usable fiat price for the requested token."""


class PaymentNotFoundError(KeyError):
    def __init__(self, payment_id: str):
        super().__init__(payment_id)
        self.payment_id = payment_id

    def __str__(self) -> str:
        return f"Payment not found: {self.payment_id}"


class InvalidTransitionError(ValueError):
    """Requested status change is not allowed from the record's current status."""


class SignatureClaimedError(ValueError):
    """The transaction already settles a different payment."""

    def __init__(self, signature: str, payment_id: str):
        super().__init__(f"transaction {signature} already settles payment {payment_id}")
        self.signature = signature
        self.payment_id = payment_id
