from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Dict, List, Optional, Protocol, Set

import httpx

from services.api.logging_config import get_logger

logger = get_logger("notifier")

EVENTS = ("payment.created", "payment.verified", "payment.refunded", "payment.expired")


class Notifier(Protocol):
    def trigger_event(self, event_name: str, payload: Dict[str, Any]) -> None: ...


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookNotifier:
    """
    Fire-and-forget webhook delivery.

    `trigger_event` only schedules the POSTs; delivery failures are logged and
    never reach the caller.
    """

    def __init__(self, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client
        self._hooks: Dict[str, Dict[str, Any]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def register_webhook(self, url: str, events: Optional[List[str]] = None, secret: Optional[str] = None) -> Dict[str, Any]:
        hook = {
            "id": f"wh_{secrets.token_hex(6)}",
            "url": url,
            "events": list(events or EVENTS),
            "secret": secret,
            "active": True,
            "createdAt": int(time.time() * 1000),
        }
        self._hooks[hook["id"]] = hook
        return hook

    def list_webhooks(self) -> List[Dict[str, Any]]:
        return [{k: v for k, v in h.items() if k != "secret"} for h in self._hooks.values()]

    def delete_webhook(self, webhook_id: str) -> bool:
        return self._hooks.pop(webhook_id, None) is not None

    def trigger_event(self, event_name: str, payload: Dict[str, Any]) -> None:
        targets = [h for h in self._hooks.values() if h["active"] and event_name in h["events"]]
        if not targets:
            return
        body = json.dumps(
            {"event": event_name, "timestamp": int(time.time() * 1000), "data": payload},
            separators=(",", ":"),
            default=str,
        ).encode("utf-8")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"no running loop; dropping {event_name} for {len(targets)} webhook(s)")
            return
        for hook in targets:
            task = loop.create_task(self._deliver(hook, event_name, body))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, hook: Dict[str, Any], event_name: str, body: bytes) -> None:
        headers = {"Content-Type": "application/json", "X-Webhook-Event": event_name}
        if hook.get("secret"):
            headers["X-Webhook-Signature"] = sign_body(hook["secret"], body)
        try:
            if self._client is not None:
                r = await self._client.post(hook["url"], content=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.post(hook["url"], content=body, headers=headers)
            if r.status_code >= 400:
                logger.warning(f"webhook {hook['id']} -> HTTP {r.status_code} for {event_name}")
        except httpx.HTTPError as e:
            logger.warning(f"webhook {hook['id']} delivery failed for {event_name}: {e}")

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
