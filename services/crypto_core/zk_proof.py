# crypto_core/zk_proof.py
"""
Proof builder/verifier for payment attestations.

A proof binds a transaction hash and amount (the private witness) to a
commitment, a nullifier, a Merkle leaf and a range assertion over the amount,
and is signed with the service's ECDSA key. Verification needs the same
service instance (same key, same nullifier set): this is a self-verification
commitment scheme, not a publicly verifiable zero-knowledge argument.
"""
from __future__ import annotations

import secrets
import threading
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from services.api.logging_config import get_logger
from services.crypto_core.commitments import create_commitment, generate_nullifier
from services.crypto_core.errors import AmountOutOfRangeError, DoubleSpendError
from services.crypto_core.hashing import hash_fields, random_hex
from services.crypto_core.merkle import MerkleTree
from services.crypto_core.nullifiers import NullifierSet
from services.crypto_core.range_proof import (
    DEFAULT_TOLERANCE,
    generate_range_proof,
    tolerance_band,
    verify_range_proof,
)
from services.crypto_core.signing import ProofSigner

logger = get_logger("zk")

FEATURES = {
    "hasNullifier": True,
    "hasMerkleProof": True,
    "hasRangeProof": True,
    "doubleSpendProtected": True,
}

PUBLIC_FIELDS = (
    "id", "commitment", "nullifier", "merkleRoot", "expectedAmount",
    "timestamp", "verified", "features",
)


class IssueJournal(Protocol):
    def record_issue(self, *, nullifier: str, commitment: str, leaf: str, proof_id: str) -> None: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _unsigned_fields(proof: Mapping[str, Any]) -> Dict[str, Any]:
    rp = proof.get("rangeProof")
    return {
        "commitment": proof.get("commitment"),
        "challenge": proof.get("challenge"),
        "response": proof.get("response"),
        "nullifier": proof.get("nullifier"),
        "merkleRoot": proof.get("merkleRoot"),
        "rangeProof": rp.get("rangeCommitment") if isinstance(rp, Mapping) else None,
        "expectedAmount": proof.get("expectedAmount"),
        "timestamp": proof.get("timestamp"),
    }


class ZKProofService:
    def __init__(
        self,
        signer: Optional[ProofSigner] = None,
        nullifiers: Optional[NullifierSet] = None,
        tree: Optional[MerkleTree] = None,
        tolerance: Any = DEFAULT_TOLERANCE,
        journal: Optional[IssueJournal] = None,
    ):
        self.signer = signer or ProofSigner()
        self.nullifiers = nullifiers if nullifiers is not None else NullifierSet()
        self.tree = tree if tree is not None else MerkleTree()
        self.tolerance = tolerance
        self.journal = journal
        self.proofs: Dict[str, Dict[str, Any]] = {}
        # claim + leaf append form one critical section
        self._lock = threading.RLock()
        logger.info(f"ZK proof service ready: curve={self.signer.curve_name} leaves={len(self.tree)} nullifiers={len(self.nullifiers)}")

    @property
    def merkle_root(self) -> str:
        return self.tree.root()

    # ---------- generation ----------

    def generate_zk_proof(
        self,
        transaction_hash: str,
        amount: Any,
        expected_amount: Any,
        options: Optional[Mapping[str, Any]] = None,
        *,
        strict_range: bool = False,
    ) -> Dict[str, Any]:
        """
        Build, sign and self-verify a proof that `transaction_hash` paid `amount`
        against `expected_amount`.

        With `strict_range` an amount outside the tolerance band raises
        AmountOutOfRangeError before the nullifier is claimed or a leaf is
        appended; otherwise the proof is issued with `verified=False`.
        """
        opts = dict(options or {})
        amount = float(amount)
        expected_amount = float(expected_amount)
        timestamp = int(opts.get("timestamp") or _now_ms())
        nonce = opts.get("nonce") or random_hex(32)
        secret = opts.get("secret") or random_hex(32)

        commitment = create_commitment(transaction_hash, amount, nonce, timestamp)
        nullifier = generate_nullifier(transaction_hash, secret, nonce)
        proof_id = f"zk_proof_{timestamp}_{secrets.token_hex(5)}"

        lo, hi = tolerance_band(expected_amount, self.tolerance)
        range_proof = generate_range_proof(amount, lo, hi)
        if strict_range and not range_proof["verified"]:
            raise AmountOutOfRangeError(amount, lo, hi)

        with self._lock:
            if not self.nullifiers.claim(nullifier, owner=commitment):
                logger.warning(f"double-spend rejected for nullifier {nullifier[:16]}")
                raise DoubleSpendError(nullifier)
            leaf = self.tree.add_leaf(commitment)
            merkle_root = self.tree.root()
            merkle_proof = self.tree.generate_merkle_proof(commitment)
            if self.journal is not None:
                self.journal.record_issue(nullifier=nullifier, commitment=commitment, leaf=leaf, proof_id=proof_id)

        challenge = opts.get("challenge") or random_hex(32)
        response = hash_fields(commitment, challenge, expected_amount, nullifier)

        proof: Dict[str, Any] = {
            "id": proof_id,
            "commitment": commitment,
            "challenge": challenge,
            "response": response,
            "nullifier": nullifier,
            "merkleRoot": merkle_root,
            "merkleProof": merkle_proof,
            "rangeProof": range_proof,
            "expectedAmount": expected_amount,
            "timestamp": timestamp,
            "features": dict(FEATURES),
            "_witness": {
                "transactionHash": transaction_hash,
                "amount": amount,
                "nonce": nonce,
                "secret": secret,
            },
        }
        proof["signature"] = self.signer.sign(_unsigned_fields(proof))
        proof["verified"] = self.verify_zk_proof(proof)

        self.proofs[proof_id] = proof
        logger.info(f"proof {proof_id} issued verified={proof['verified']} leaves={len(self.tree)}")
        return proof

    # ---------- verification ----------

    def verify_zk_proof(self, proof: Mapping[str, Any]) -> bool:
        if not isinstance(proof, Mapping):
            raise TypeError(f"proof must be a mapping, got {type(proof).__name__}")

        if not all(proof.get(k) for k in ("commitment", "challenge", "response", "nullifier")):
            return False
        expected_amount = proof.get("expectedAmount")
        if not _is_number(expected_amount):
            return False

        nullifier = proof["nullifier"]
        if self.nullifiers.is_used(nullifier) and self.nullifiers.owner_of(nullifier) != proof["commitment"]:
            logger.warning(f"nullifier {nullifier[:16]} already used by another proof")
            return False

        expected_response = hash_fields(proof["commitment"], proof["challenge"], expected_amount, nullifier)
        if proof["response"] != expected_response:
            return False

        if proof.get("merkleRoot") and proof["merkleRoot"] != self.tree.root():
            logger.debug("merkle root differs from current tree (tree has grown since issue)")

        rp = proof.get("rangeProof")
        if rp:
            lo, hi = tolerance_band(expected_amount, self.tolerance)
            if not verify_range_proof(rp, lo, hi):
                logger.warning(f"range proof failed for {proof.get('id')}")
                return False

        signature = proof.get("signature")
        if not isinstance(signature, str) or not self.signer.verify(_unsigned_fields(proof), signature):
            return False

        self.nullifiers.mark_used(nullifier, owner=proof["commitment"])
        return True

    def batch_verify_proofs(self, proofs: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
        results = [{"id": p.get("id"), "verified": self.verify_zk_proof(p)} for p in proofs]
        ok = sum(1 for r in results if r["verified"])
        return {"total": len(results), "verified": ok, "failed": len(results) - ok, "results": results}

    def verify_proof_for_transaction(
        self,
        proof: Mapping[str, Any],
        transaction_hash: str,
        actual_amount: Any,
        witness: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Replay the witness: does this proof commit to `transaction_hash` and `actual_amount`?"""
        w = witness or proof.get("_witness")
        if not w:
            return False
        commitment = create_commitment(w["transactionHash"], w["amount"], w["nonce"], proof.get("timestamp"))
        if commitment != proof.get("commitment"):
            return False
        if w["transactionHash"] != transaction_hash:
            return False
        return abs(float(w["amount"]) - float(actual_amount)) <= 1e-8

    # ---------- disclosure ----------

    def selective_disclosure(self, proof: Mapping[str, Any], reveal_amount: bool = False) -> Dict[str, Any]:
        disclosed = {k: proof.get(k) for k in PUBLIC_FIELDS}
        if reveal_amount and proof.get("_witness"):
            disclosed["amount"] = proof["_witness"]["amount"]
        # the transaction hash never leaves through this view
        return disclosed

    def export_public_proof(self, proof: Mapping[str, Any]) -> Dict[str, Any]:
        rp = proof.get("rangeProof")
        return {
            "id": proof.get("id"),
            "commitment": proof.get("commitment"),
            "challenge": proof.get("challenge"),
            "response": proof.get("response"),
            "nullifier": proof.get("nullifier"),
            "merkleRoot": proof.get("merkleRoot"),
            "merkleProof": proof.get("merkleProof"),
            # hashes only; the amount itself stays in the witness
            "rangeProof": dict(rp) if rp else None,
            "signature": proof.get("signature"),
            "expectedAmount": proof.get("expectedAmount"),
            "timestamp": proof.get("timestamp"),
            "verified": proof.get("verified"),
            "features": proof.get("features"),
        }

    def aggregate_proofs(self, proofs: List[Mapping[str, Any]]) -> Dict[str, Any]:
        stamps = [p["timestamp"] for p in proofs if p.get("timestamp") is not None]
        return {
            "totalProofs": len(proofs),
            "totalExpectedAmount": sum(float(p.get("expectedAmount") or 0) for p in proofs),
            "merkleRoot": self.tree.root(),
            "nullifiers": [p.get("nullifier") for p in proofs],
            "commitments": [p.get("commitment") for p in proofs],
            "timestampRange": {
                "min": min(stamps) if stamps else None,
                "max": max(stamps) if stamps else None,
            },
        }

    # ---------- lookup ----------

    def get_proof(self, proof_id: str) -> Optional[Dict[str, Any]]:
        return self.proofs.get(proof_id)

    def get_all_proofs(self) -> List[Dict[str, Any]]:
        return list(self.proofs.values())

    def get_proof_stats(self) -> Dict[str, Any]:
        proofs = self.get_all_proofs()
        return {
            "total": len(proofs),
            "verified": sum(1 for p in proofs if p.get("verified")),
            "nullifiersUsed": len(self.nullifiers),
            "merkleTreeSize": len(self.tree),
            "merkleRoot": self.tree.root(),
        }

    def public_key_pem(self) -> str:
        return self.signer.public_key_pem()
