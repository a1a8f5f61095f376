from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

import httpx

from services.api.logging_config import get_logger
from services.api.retry import RetryError, call_with_retry
from services.oracle.errors import TransactionSourceError

logger = get_logger("solana_rpc")


def _key_str(k: Any) -> str:
    if isinstance(k, dict):
        return str(k.get("pubkey") or "")
    return str(k)


def normalize_transaction(signature: str, raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Flatten a getTransaction result into the shape the matcher reads."""
    if not raw:
        return None
    meta = raw.get("meta") or {}
    message = (raw.get("transaction") or {}).get("message") or {}
    keys = [_key_str(k) for k in message.get("accountKeys") or []]
    loaded = meta.get("loadedAddresses") or {}
    keys += [str(k) for k in loaded.get("writable") or []]
    keys += [str(k) for k in loaded.get("readonly") or []]
    return {
        "signature": signature,
        "confirmed": bool(meta) and meta.get("err") is None,
        "blockTime": raw.get("blockTime"),
        "slot": raw.get("slot"),
        "accountKeys": keys,
        "preBalances": list(meta.get("preBalances") or []),
        "postBalances": list(meta.get("postBalances") or []),
        "preTokenBalances": list(meta.get("preTokenBalances") or []),
        "postTokenBalances": list(meta.get("postTokenBalances") or []),
    }


class SolanaRpcSource:
    """
    Transaction source backed by a Solana JSON-RPC endpoint.

    Every call runs under a timeout and is retried with backoff; a call that
    still fails raises TransactionSourceError.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        commitment: str = "confirmed",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.commitment = commitment
        self._client = client
        self._ids = itertools.count(1)

    async def _post(self, method: str, params: Optional[list] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}

        async def once() -> Any:
            if self._client is not None:
                r = await self._client.post(self.rpc_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.post(self.rpc_url, json=payload)
            r.raise_for_status()
            body = r.json()
            if body.get("error"):
                err = body["error"]
                raise RuntimeError(f"RPC {method} error {err.get('code')}: {err.get('message')}")
            return body.get("result")

        try:
            return await call_with_retry(
                once,
                max_retries=self.max_retries,
                timeout=self.timeout,
                description=f"RPC {method}",
            )
        except RetryError as e:
            raise TransactionSourceError(str(e)) from e

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        raw = await self._post(
            "getTransaction",
            [signature, {"encoding": "json", "commitment": self.commitment, "maxSupportedTransactionVersion": 0}],
        )
        return normalize_transaction(signature, raw)

    async def list_recent_signatures(self, address: str, limit: int = 100) -> List[str]:
        rows = await self._post("getSignaturesForAddress", [address, {"limit": limit, "commitment": self.commitment}])
        return [r["signature"] for r in rows or [] if r.get("signature")]

    async def health(self) -> bool:
        try:
            return (await self._post("getHealth")) == "ok"
        except TransactionSourceError as e:
            logger.error(f"RPC health check failed: {e}")
            return False
