# crypto_core/commitments.py
from __future__ import annotations

import time
from typing import Any, Dict, Mapping, Optional

from services.crypto_core.hashing import hash_fields, random_hex


def create_commitment(transaction_hash: str, amount: Any, nonce: str, timestamp: int) -> str:
    # C = H(tx || amount || nonce || ts)
    return hash_fields(transaction_hash, amount, nonce, timestamp)


def generate_nullifier(transaction_hash: str, secret: str, nonce: str) -> str:
    # N = H(tx || secret || nonce); disjoint input set from the commitment
    return hash_fields(transaction_hash, secret, nonce)


def generate_secret() -> str:
    return random_hex(32)


def _now_ms() -> int:
    return int(time.time() * 1000)


class PaymentCommitments:
    """
    Payment-level commitments: H(paymentId || amount || token || secret).

    Only the commitment and its timestamps are kept; amount and token are
    never stored, so `create_proof` can be shown publicly.
    """

    def __init__(self) -> None:
        self._commitments: Dict[str, Dict[str, Any]] = {}

    def generate_commitment(self, payment_id: str, amount: Any, token: str, secret: Optional[str] = None) -> Dict[str, Any]:
        secret = secret or generate_secret()
        commitment = hash_fields(payment_id, amount, token, secret)
        self._commitments[payment_id] = {
            "commitment": commitment,
            "timestamp": _now_ms(),
            "verified": False,
            "paymentExists": True,
        }
        return {"commitment": commitment, "secret": secret, "paymentId": payment_id, "token": token}

    def verify_commitment(self, payment_id: str, amount: Any, token: str, secret: str) -> Dict[str, Any]:
        stored = self._commitments.get(payment_id)
        if not stored:
            return {"valid": False, "error": "Commitment not found"}

        valid = hash_fields(payment_id, amount, token, secret) == stored["commitment"]
        if valid:
            stored["verified"] = True
            stored["verifiedAt"] = _now_ms()

        return {
            "valid": valid,
            "commitment": stored["commitment"],
            "verified": stored["verified"],
            "timestamp": stored["timestamp"],
            "message": "Payment verified with zero-knowledge proof" if valid else "Invalid proof",
        }

    def create_proof(self, payment_id: str) -> Optional[Dict[str, Any]]:
        stored = self._commitments.get(payment_id)
        if not stored:
            return None
        return {
            "paymentId": payment_id,
            "commitment": stored["commitment"],
            "verified": stored["verified"],
            "timestamp": stored["timestamp"],
            "verifiedAt": stored.get("verifiedAt"),
        }

    def restore(self, payment_id: str, exported: Mapping[str, Any]) -> None:
        """Re-seed a commitment from its `create_proof` form (e.g. after a restart)."""
        self._commitments[payment_id] = {
            "commitment": exported["commitment"],
            "timestamp": exported.get("timestamp"),
            "verified": bool(exported.get("verified")),
            "paymentExists": True,
        }
        if exported.get("verifiedAt") is not None:
            self._commitments[payment_id]["verifiedAt"] = exported["verifiedAt"]
