from __future__ import annotations

import asyncio
import copy
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import httpx

from services.api.logging_config import get_logger
from services.oracle.errors import PersistenceError

logger = get_logger("payment_store")


class PaymentStore(Protocol):
    async def save(self, record: Dict[str, Any]) -> None: ...
    async def load_all(self) -> List[Dict[str, Any]]: ...
    async def delete(self, payment_id: str) -> None: ...


class InMemoryPaymentStore:
    def __init__(self) -> None:
        self._rows: Dict[str, Dict[str, Any]] = {}

    async def save(self, record: Dict[str, Any]) -> None:
        self._rows[record["id"]] = copy.deepcopy(record)

    async def load_all(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._rows.values()]

    async def delete(self, payment_id: str) -> None:
        self._rows.pop(payment_id, None)


class JsonFilePaymentStore:
    """One JSON document {"payments": [...]} on disk, rewritten on every change."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _state(self) -> dict:
        if self.path.exists():
            try:
                return json.loads(self.path.read_text())
            except (OSError, ValueError) as e:
                raise PersistenceError(f"cannot read {self.path}: {e}") from e
        return {"payments": []}

    def _write(self, st: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(st, indent=2))
            tmp.replace(self.path)
        except OSError as e:
            raise PersistenceError(f"cannot write {self.path}: {e}") from e

    def _upsert(self, record: Dict[str, Any]) -> None:
        st = self._state()
        rows = [r for r in st.get("payments", []) if r.get("id") != record["id"]]
        rows.append(record)
        st["payments"] = rows
        self._write(st)

    def _remove(self, payment_id: str) -> None:
        st = self._state()
        st["payments"] = [r for r in st.get("payments", []) if r.get("id") != payment_id]
        self._write(st)

    # file work runs in a worker thread; the asyncio lock keeps rewrites ordered
    async def save(self, record: Dict[str, Any]) -> None:
        async with self._lock:
            await asyncio.to_thread(self._upsert, record)

    async def load_all(self) -> List[Dict[str, Any]]:
        async with self._lock:
            st = await asyncio.to_thread(self._state)
        return list(st.get("payments", []))

    async def delete(self, payment_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._remove, payment_id)


class SheetsPaymentStore:
    """
    Spreadsheet proxy store.

    POST {base}/payment         body {payment, sheetId, sheetName}
    GET  {base}/payments        ?sheetId=&sheetName=
    DELETE {base}/payment/{id}  body {sheetId, sheetName}
    """

    def __init__(
        self,
        api_base: str,
        sheet_id: Optional[str] = None,
        sheet_name: str = "payment",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.sheet_id = sheet_id
        self.sheet_name = sheet_name
        self.timeout = timeout
        self._client = client

    async def _request(self, method: str, path: str, **kw) -> httpx.Response:
        url = f"{self.api_base}{path}"
        try:
            if self._client is not None:
                r = await self._client.request(method, url, **kw)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.request(method, url, **kw)
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {url} failed: {e}") from e
        return r

    async def save(self, record: Dict[str, Any]) -> None:
        r = await self._request(
            "POST", "/payment",
            json={"payment": record, "sheetId": self.sheet_id, "sheetName": self.sheet_name},
        )
        if r.status_code >= 400:
            raise PersistenceError(f"save {record.get('id')} failed: HTTP {r.status_code}")
        body = r.json() if r.content else {}
        if body.get("sheetId") and body["sheetId"] != self.sheet_id:
            self.sheet_id = body["sheetId"]
            logger.info(f"payment sheet created: {self.sheet_id}")

    async def load_all(self) -> List[Dict[str, Any]]:
        if not self.sheet_id:
            return []
        r = await self._request("GET", "/payments", params={"sheetId": self.sheet_id, "sheetName": self.sheet_name})
        if r.status_code == 404:
            return []
        if r.status_code >= 400:
            raise PersistenceError(f"load failed: HTTP {r.status_code}")
        return list(r.json().get("payments") or [])

    async def delete(self, payment_id: str) -> None:
        r = await self._request(
            "DELETE", f"/payment/{payment_id}",
            json={"sheetId": self.sheet_id, "sheetName": self.sheet_name},
        )
        if r.status_code >= 400 and r.status_code != 404:
            raise PersistenceError(f"delete {payment_id} failed: HTTP {r.status_code}")
