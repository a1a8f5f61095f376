"""Shared fakes and fixtures.

FakeSource: in-memory transaction source keyed by signature
RecordingNotifier: keeps every triggered event for assertions
"""
import os
import time

import base58
import pytest

from services.api.payment_store import InMemoryPaymentStore
from services.crypto_core.zk_proof import ZKProofService
from services.oracle.errors import TransactionSourceError
from services.oracle.payments import PaymentOracle

LAMPORTS = 1_000_000_000
PAYER = base58.b58encode(b"\x01" * 32).decode()
MERCHANT = base58.b58encode(b"\x02" * 32).decode()


def fake_signature() -> str:
    return base58.b58encode(os.urandom(64)).decode()


def make_tx(signature=None, to=MERCHANT, sol=1.0, block_time=None, confirmed=True):
    """Normalised transaction moving `sol` SOL from PAYER to `to`."""
    lamports = int(round(sol * LAMPORTS))
    return {
        "signature": signature or fake_signature(),
        "confirmed": confirmed,
        "blockTime": int(time.time()) if block_time is None else block_time,
        "slot": 1,
        "accountKeys": [PAYER, to],
        "preBalances": [50 * LAMPORTS, 0],
        "postBalances": [50 * LAMPORTS - lamports - 5000, lamports],
        "preTokenBalances": [],
        "postTokenBalances": [],
    }


class FakeSource:
    def __init__(self):
        self.txs = {}
        self.order = []
        self.failing = set()
        self.healthy = True

    def add(self, tx):
        self.txs[tx["signature"]] = tx
        # newest first, like getSignaturesForAddress
        self.order.insert(0, tx["signature"])
        return tx

    async def get_transaction(self, signature):
        if signature in self.failing:
            raise TransactionSourceError(f"boom on {signature}")
        return self.txs.get(signature)

    async def list_recent_signatures(self, address, limit=100):
        return self.order[:limit]

    async def health(self):
        return self.healthy


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def trigger_event(self, event_name, payload):
        self.events.append((event_name, payload))

    def names(self):
        return [n for n, _ in self.events]

    def register_webhook(self, url, events=None, secret=None):
        return {"id": "wh_test", "url": url, "events": list(events or []), "secret": secret, "active": True}

    def list_webhooks(self):
        return []

    def delete_webhook(self, webhook_id):
        return webhook_id == "wh_test"


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return InMemoryPaymentStore()


@pytest.fixture
def zk():
    return ZKProofService()


@pytest.fixture
def oracle(source, store, notifier, zk):
    return PaymentOracle(source, store, notifier, zk, MERCHANT)
