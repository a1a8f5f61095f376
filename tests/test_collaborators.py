"""Outbound collaborators: retry wrapper, Solana RPC, price feed, webhooks."""
import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from services.api.notifier import WebhookNotifier, sign_body
from services.api.retry import RetryError, call_with_retry, is_transient
from services.api.solana_rpc import SolanaRpcSource, normalize_transaction
from services.oracle.errors import PriceUnavailableError, TransactionSourceError
from services.oracle.prices import CoinGeckoPriceSource

RAW_TX = {
    "slot": 250000000,
    "blockTime": 1700000000,
    "meta": {
        "err": None,
        "preBalances": [5_000_000_000, 0, 1],
        "postBalances": [3_999_995_000, 1_000_000_000, 1],
        "preTokenBalances": [],
        "postTokenBalances": [],
        "loadedAddresses": {"writable": ["LoadedW"], "readonly": ["LoadedR"]},
    },
    "transaction": {"message": {"accountKeys": ["Payer", {"pubkey": "Merchant"}, "System"]}},
}


def run(coro):
    return asyncio.run(coro)


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestRetry:
    def test_succeeds_after_transient_failures(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("connection refused")
            return "ok"

        assert run(call_with_retry(flaky, max_retries=3, base_delay=0)) == "ok"
        assert len(calls) == 3

    def test_gives_up(self):
        async def broken():
            raise RuntimeError("nope")

        with pytest.raises(RetryError) as exc:
            run(call_with_retry(broken, max_retries=2, base_delay=0))
        assert isinstance(exc.value.last_error, RuntimeError)

    def test_timeout_per_attempt(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(RetryError):
            run(call_with_retry(slow, max_retries=1, timeout=0.01))

    def test_classification(self):
        assert is_transient(asyncio.TimeoutError())
        assert is_transient(RuntimeError("429 Too Many Requests"))
        assert not is_transient(RuntimeError("invalid params"))


class TestSolanaRpc:
    def test_normalize(self):
        tx = normalize_transaction("sig", RAW_TX)
        assert tx["confirmed"] is True
        assert tx["accountKeys"] == ["Payer", "Merchant", "System", "LoadedW", "LoadedR"]
        assert tx["postBalances"][1] == 1_000_000_000
        assert normalize_transaction("sig", None) is None

    def test_failed_transaction_not_confirmed(self):
        raw = json.loads(json.dumps(RAW_TX))
        raw["meta"]["err"] = {"InstructionError": [0, "Custom"]}
        assert normalize_transaction("sig", raw)["confirmed"] is False

    def test_get_transaction_and_signatures(self):
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append(body["method"])
            if body["method"] == "getTransaction":
                assert body["params"][1]["maxSupportedTransactionVersion"] == 0
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": RAW_TX})
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                             "result": [{"signature": "s1"}, {"signature": "s2"}]})

        async def go():
            async with mock_client(handler) as client:
                src = SolanaRpcSource("https://rpc.test", client=client)
                return await src.get_transaction("sig"), await src.list_recent_signatures("Merchant", 2)

        tx, sigs = run(go())
        assert tx["blockTime"] == 1700000000
        assert sigs == ["s1", "s2"]
        assert seen == ["getTransaction", "getSignaturesForAddress"]

    def test_rpc_error_surfaces_as_source_error(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad"}})

        async def go():
            async with mock_client(handler) as client:
                src = SolanaRpcSource("https://rpc.test", max_retries=1, client=client)
                healthy = await src.health()
                await src.get_transaction("sig")
                return healthy

        with pytest.raises(TransactionSourceError):
            run(go())


class TestPrices:
    def test_price(self):
        def handler(request):
            assert request.url.params["ids"] == "solana"
            return httpx.Response(200, json={"solana": {"usd": 142.5}})

        async def go():
            async with mock_client(handler) as client:
                return await CoinGeckoPriceSource(client=client).get_price("SOL", "USD")

        assert run(go()) == Decimal("142.5")

    def test_missing_price(self):
        async def go():
            async with mock_client(lambda r: httpx.Response(200, json={})) as client:
                await CoinGeckoPriceSource(client=client, max_retries=1).get_price("SOL")

        with pytest.raises(PriceUnavailableError):
            run(go())


class TestWebhooks:
    def test_delivery_is_signed(self):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(200)

        async def go():
            async with mock_client(handler) as client:
                n = WebhookNotifier(client=client)
                hook = n.register_webhook("https://hooks.test/a", ["payment.verified"], secret="s3")
                n.register_webhook("https://hooks.test/b", ["payment.created"])
                n.trigger_event("payment.verified", {"id": "pay_1"})
                await n.drain()
                return hook, n.list_webhooks()

        hook, listed = run(go())
        assert len(received) == 1
        req = received[0]
        assert str(req.url) == "https://hooks.test/a"
        assert req.headers["X-Webhook-Event"] == "payment.verified"
        assert req.headers["X-Webhook-Signature"] == sign_body("s3", req.content)
        assert json.loads(req.content)["data"] == {"id": "pay_1"}
        assert all("secret" not in h for h in listed)
        assert hook["id"].startswith("wh_")

    def test_failures_do_not_reach_caller(self):
        def handler(request):
            raise httpx.ConnectError("down")

        async def go():
            async with mock_client(handler) as client:
                n = WebhookNotifier(client=client)
                n.register_webhook("https://hooks.test/a")
                n.trigger_event("payment.created", {"id": "x"})
                await n.drain()

        run(go())

    def test_no_loop_drops_event(self):
        n = WebhookNotifier()
        n.register_webhook("https://hooks.test/a")
        n.trigger_event("payment.created", {"id": "x"})
        assert n.delete_webhook(n.list_webhooks()[0]["id"]) is True
