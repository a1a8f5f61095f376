"""Proof builder/verifier: round trip, tampering, double-spend, disclosure."""
import json

import pytest

from services.crypto_core.errors import AmountOutOfRangeError, DoubleSpendError
from services.crypto_core.merkle import verify_merkle
from services.crypto_core.nullifiers import NullifierSet
from services.crypto_core.signing import ProofSigner
from services.crypto_core.zk_proof import ZKProofService

TX = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW"


class TestRoundTrip:
    def test_generated_proof_verifies(self, zk):
        proof = zk.generate_zk_proof(TX, 1.02, 1.0)
        assert proof["verified"] is True
        # verifying again with the same service still succeeds
        assert zk.verify_zk_proof(proof) is True
        assert proof["id"].startswith("zk_proof_")
        assert proof["features"]["doubleSpendProtected"] is True

    def test_merkle_proof_included(self, zk):
        zk.generate_zk_proof("other-tx", 1, 1)
        proof = zk.generate_zk_proof(TX, 1, 1)
        mp = proof["merkleProof"]
        assert mp["root"] == proof["merkleRoot"] == zk.merkle_root
        assert verify_merkle(mp["leafHash"], mp["path"], mp["root"])

    def test_amount_outside_band_is_not_verified(self, zk):
        proof = zk.generate_zk_proof(TX, 1.2, 1.0)
        assert proof["rangeProof"]["verified"] is False
        assert proof["verified"] is False

    def test_other_service_key_rejects(self, zk):
        proof = zk.generate_zk_proof(TX, 1, 1)
        other = ZKProofService(signer=ProofSigner())
        assert other.verify_zk_proof(proof) is False


class TestTampering:
    @pytest.fixture
    def proof(self, zk):
        return zk.generate_zk_proof(TX, 1.0, 1.0)

    def test_response(self, zk, proof):
        proof["response"] = "0" * 64
        assert zk.verify_zk_proof(proof) is False

    def test_signature(self, zk, proof):
        sig = proof["signature"]
        proof["signature"] = sig[:-2] + ("00" if sig[-2:] != "00" else "11")
        assert zk.verify_zk_proof(proof) is False

    def test_nullifier(self, zk, proof):
        proof["nullifier"] = "f" * 64
        assert zk.verify_zk_proof(proof) is False

    def test_expected_amount(self, zk, proof):
        proof["expectedAmount"] = 2.0
        assert zk.verify_zk_proof(proof) is False

    def test_missing_fields(self, zk):
        assert zk.verify_zk_proof({"commitment": "x"}) is False

    def test_non_mapping_raises(self, zk):
        with pytest.raises(TypeError):
            zk.verify_zk_proof(["not", "a", "proof"])


class TestDoubleSpend:
    def test_same_nonce_and_secret_rejected(self, zk):
        opts = {"nonce": "aa" * 32, "secret": "bb" * 32}
        zk.generate_zk_proof(TX, 1, 1, opts)
        leaves = len(zk.tree)
        with pytest.raises(DoubleSpendError):
            zk.generate_zk_proof(TX, 1, 1, opts)
        # nothing appended for the rejected attempt
        assert len(zk.tree) == leaves

    def test_nullifier_owned_by_other_commitment(self):
        ns = NullifierSet()
        zk = ZKProofService(nullifiers=ns)
        proof = zk.generate_zk_proof(TX, 1, 1)
        ns._owners[proof["nullifier"]] = "someone-else"
        assert zk.verify_zk_proof(proof) is False

    def test_injected_fields_are_deterministic(self):
        opts = {"nonce": "01" * 32, "secret": "02" * 32, "timestamp": 1700000000000, "challenge": "03" * 32}
        a = ZKProofService().generate_zk_proof(TX, 1, 1, opts)
        b = ZKProofService().generate_zk_proof(TX, 1, 1, opts)
        assert a["commitment"] == b["commitment"]
        assert a["nullifier"] == b["nullifier"]
        assert a["response"] == b["response"]


class TestDisclosure:
    def test_selective_disclosure_hides_witness(self, zk):
        proof = zk.generate_zk_proof(TX, 1.01, 1.0)
        view = zk.selective_disclosure(proof)
        blob = json.dumps(view)
        assert "_witness" not in view
        assert TX not in blob
        assert "amount" not in view
        assert view["commitment"] == proof["commitment"]

    def test_reveal_amount(self, zk):
        proof = zk.generate_zk_proof(TX, 1.01, 1.0)
        assert zk.selective_disclosure(proof, reveal_amount=True)["amount"] == 1.01

    def test_export_public_proof(self, zk):
        proof = zk.generate_zk_proof(TX, 1, 1)
        public = zk.export_public_proof(proof)
        assert "_witness" not in public
        assert TX not in json.dumps(public)
        assert public["rangeProof"] == proof["rangeProof"]

    def test_exported_proof_verifies(self, zk):
        proof = zk.generate_zk_proof(TX, 0.04515, 0.043)
        public = json.loads(json.dumps(zk.export_public_proof(proof)))
        assert zk.verify_zk_proof(public) is True
        # a later process holding the same key verifies it too
        assert ZKProofService(signer=zk.signer).verify_zk_proof(public) is True

    def test_verify_for_transaction(self, zk):
        proof = zk.generate_zk_proof(TX, 1.5, 1.5)
        assert zk.verify_proof_for_transaction(proof, TX, 1.5) is True
        assert zk.verify_proof_for_transaction(proof, "other", 1.5) is False
        assert zk.verify_proof_for_transaction(proof, TX, 1.4) is False
        assert zk.verify_proof_for_transaction(zk.export_public_proof(proof), TX, 1.5) is False


class TestStrictRange:
    class Journal:
        def __init__(self):
            self.rows = []

        def record_issue(self, **kw):
            self.rows.append(kw)

    def test_out_of_band_leaves_no_state(self):
        journal = self.Journal()
        zk = ZKProofService(journal=journal)
        with pytest.raises(AmountOutOfRangeError):
            zk.generate_zk_proof(TX, 1.2, 1.0, strict_range=True)
        assert len(zk.tree) == 0
        assert len(zk.nullifiers) == 0
        assert zk.get_all_proofs() == []
        assert journal.rows == []

    def test_band_edges_verify(self, zk):
        assert zk.generate_zk_proof(TX, 0.04515, 0.043, strict_range=True)["verified"] is True
        assert zk.generate_zk_proof("tx-low", 0.04085, 0.043, strict_range=True)["verified"] is True

    def test_near_zero_amount_uses_floor(self, zk):
        proof = zk.generate_zk_proof(TX, 0.00000002, 0.00000001, strict_range=True)
        assert proof["verified"] is True


class TestAggregate:
    def test_aggregate_and_stats(self, zk):
        p1 = zk.generate_zk_proof("tx-a", 1, 1, {"timestamp": 1000})
        p2 = zk.generate_zk_proof("tx-b", 2, 2, {"timestamp": 3000})
        agg = zk.aggregate_proofs([p1, p2])
        assert agg["totalProofs"] == 2
        assert agg["totalExpectedAmount"] == 3.0
        assert agg["timestampRange"] == {"min": 1000, "max": 3000}
        assert agg["nullifiers"] == [p1["nullifier"], p2["nullifier"]]
        assert agg["merkleRoot"] == zk.merkle_root

        stats = zk.get_proof_stats()
        assert stats["total"] == 2
        assert stats["verified"] == 2
        assert stats["merkleTreeSize"] == 2

    def test_batch_verify(self, zk):
        good = zk.generate_zk_proof("tx-a", 1, 1)
        bad = dict(zk.generate_zk_proof("tx-b", 1, 1), response="00")
        res = zk.batch_verify_proofs([good, bad])
        assert (res["total"], res["verified"], res["failed"]) == (2, 1, 1)
