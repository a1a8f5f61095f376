# crypto_core/witness_box.py
# Seals a proof's private witness before the record leaves the process.
from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from nacl.utils import random as nacl_random


def derive_witness_key(master: bytes, proof_id: str) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"zk-oracle-witness-v1|" + proof_id.encode("utf-8"),
    )
    return hkdf.derive(master)


def box_encrypt(key32: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    sb = SecretBox(key32)
    nonce = nacl_random(SecretBox.NONCE_SIZE)
    ct = sb.encrypt(plaintext, nonce)  # nonce || ciphertext
    return nonce, ct[SecretBox.NONCE_SIZE:]


def box_decrypt(key32: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    return SecretBox(key32).decrypt(nonce + ciphertext)


def seal_witness(master: bytes, proof_id: str, witness: Mapping[str, Any]) -> Dict[str, str]:
    key = derive_witness_key(master, proof_id)
    nonce, ct = box_encrypt(key, json.dumps(dict(witness), sort_keys=True).encode("utf-8"))
    return {"nonce": nonce.hex(), "ct": ct.hex()}


def open_witness(master: bytes, proof_id: str, sealed: Mapping[str, str]) -> Dict[str, Any]:
    """Raises ValueError when the box was sealed under another key or tampered with."""
    key = derive_witness_key(master, proof_id)
    try:
        pt = box_decrypt(key, bytes.fromhex(sealed["nonce"]), bytes.fromhex(sealed["ct"]))
    except (CryptoError, KeyError) as e:
        raise ValueError(f"cannot open sealed witness for {proof_id}: {e}") from e
    return json.loads(pt)
