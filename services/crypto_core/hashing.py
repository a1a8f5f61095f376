# crypto_core/hashing.py
from __future__ import annotations

import hashlib
import json
import secrets
from typing import Any


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_fields(*fields: Any) -> str:
    """SHA-256 over the fields joined with ':' (the delimiter every digest here uses)."""
    return sha256_hex(":".join(str(f) for f in fields))


def canonical_bytes(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def random_hex(nbytes: int = 32) -> str:
    return secrets.token_bytes(nbytes).hex()
