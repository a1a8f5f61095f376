"""Sealed witness boxes."""
import pytest

from services.crypto_core.witness_box import derive_witness_key, open_witness, seal_witness

MASTER = b"\x07" * 32
WITNESS = {"transactionHash": "sig", "amount": 1.5, "nonce": "aa", "secret": "bb"}


class TestWitnessBox:
    def test_round_trip(self):
        sealed = seal_witness(MASTER, "zk_proof_1", WITNESS)
        assert set(sealed) == {"nonce", "ct"}
        assert open_witness(MASTER, "zk_proof_1", sealed) == WITNESS

    def test_key_is_bound_to_proof_id(self):
        assert derive_witness_key(MASTER, "a") != derive_witness_key(MASTER, "b")
        sealed = seal_witness(MASTER, "zk_proof_1", WITNESS)
        with pytest.raises(ValueError):
            open_witness(MASTER, "zk_proof_2", sealed)

    def test_tampered_ciphertext(self):
        sealed = seal_witness(MASTER, "p", WITNESS)
        ct = bytearray(bytes.fromhex(sealed["ct"]))
        ct[0] ^= 1
        with pytest.raises(ValueError):
            open_witness(MASTER, "p", {"nonce": sealed["nonce"], "ct": ct.hex()})
