# crypto_core/signing.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from services.crypto_core.hashing import canonical_bytes


class ProofSigner:
    """ECDSA P-256 / SHA-256 over canonical JSON. Signatures are DER, hex encoded."""

    curve_name = "P-256"

    def __init__(self, private_key: Optional[ec.EllipticCurvePrivateKey] = None):
        self._sk = private_key or ec.generate_private_key(ec.SECP256R1())
        self._pk = self._sk.public_key()

    @classmethod
    def from_pem_file(cls, path: str | Path) -> "ProofSigner":
        sk = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
        if not isinstance(sk, ec.EllipticCurvePrivateKey):
            raise ValueError(f"{path} is not an EC private key")
        return cls(sk)

    @classmethod
    def load_or_create(cls, path: Optional[str | Path]) -> "ProofSigner":
        if not path:
            return cls()
        p = Path(path)
        if p.exists():
            return cls.from_pem_file(p)
        signer = cls()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(signer.private_pem())
        return signer

    def private_pem(self) -> bytes:
        return self._sk.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

    def public_key_pem(self) -> str:
        return self._pk.public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def sign(self, payload: Any) -> str:
        return self._sk.sign(canonical_bytes(payload), ec.ECDSA(hashes.SHA256())).hex()

    def verify(self, payload: Any, signature_hex: str) -> bool:
        try:
            sig = bytes.fromhex(signature_hex)
            self._pk.verify(sig, canonical_bytes(payload), ec.ECDSA(hashes.SHA256()))
            return True
        except (InvalidSignature, ValueError, TypeError):
            return False
