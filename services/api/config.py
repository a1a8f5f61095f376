# services/api/config.py
from __future__ import annotations

import os
import pathlib
import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from services.api.eventlog import EventLog
from services.api.logging_config import get_logger
from services.api.notifier import WebhookNotifier
from services.api.payment_store import InMemoryPaymentStore, JsonFilePaymentStore, SheetsPaymentStore
from services.api.solana_rpc import SolanaRpcSource
from services.crypto_core.merkle import MerkleTree
from services.crypto_core.nullifiers import NullifierSet
from services.crypto_core.signing import ProofSigner
from services.crypto_core.zk_proof import ZKProofService
from services.oracle.payments import PaymentOracle
from services.oracle.prices import CoinGeckoPriceSource

logger = get_logger("config")

REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[2])


def _flag(name: str, default: str = "1") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class OracleSettings:
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    merchant_address: Optional[str] = None
    data_dir: str = os.path.join(REPO_ROOT, "data")
    payment_store: str = "json"
    sheets_api_base: Optional[str] = None
    sheets_sheet_id: Optional[str] = None
    sheets_sheet_name: str = "payment"
    poll_interval_sec: float = 30.0
    signature_limit: int = 100
    payment_ttl_sec: float = 3600.0
    payment_expires_in_sec: float = 900.0
    amount_tolerance: Decimal = Decimal("0.05")
    rpc_timeout_sec: float = 10.0
    rpc_max_retries: int = 3
    eventlog_enabled: bool = True
    proof_signing_key_path: Optional[str] = None
    witness_key_hex: Optional[str] = None
    webhook_urls: List[str] = field(default_factory=list)
    webhook_secret: Optional[str] = None
    auto_monitor: bool = True

    @property
    def eventlog_path(self) -> str:
        return os.path.join(self.data_dir, "oracle_events.db")

    @property
    def payments_path(self) -> str:
        return os.path.join(self.data_dir, "payments.json")


def load_settings() -> OracleSettings:
    return OracleSettings(
        solana_rpc_url=os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com"),
        merchant_address=os.getenv("MERCHANT_ADDRESS") or None,
        data_dir=os.getenv("DATA_DIR", os.path.join(REPO_ROOT, "data")),
        payment_store=os.getenv("PAYMENT_STORE", "json").strip().lower(),
        sheets_api_base=os.getenv("SHEETS_API_BASE") or None,
        sheets_sheet_id=os.getenv("SHEETS_SHEET_ID") or None,
        sheets_sheet_name=os.getenv("SHEETS_SHEET_NAME", "payment"),
        poll_interval_sec=float(os.getenv("POLL_INTERVAL_SEC", "30")),
        signature_limit=int(os.getenv("SIGNATURE_LIMIT", "100")),
        payment_ttl_sec=float(os.getenv("PAYMENT_TTL_SEC", "3600")),
        payment_expires_in_sec=float(os.getenv("PAYMENT_EXPIRES_IN_SEC", "900")),
        amount_tolerance=Decimal(os.getenv("AMOUNT_TOLERANCE", "0.05")),
        rpc_timeout_sec=float(os.getenv("RPC_TIMEOUT_SEC", "10")),
        rpc_max_retries=int(os.getenv("RPC_MAX_RETRIES", "3")),
        eventlog_enabled=_flag("EVENTLOG_ENABLED"),
        proof_signing_key_path=os.getenv("PROOF_SIGNING_KEY_PATH") or None,
        witness_key_hex=os.getenv("WITNESS_KEY_HEX") or None,
        webhook_urls=[u.strip() for u in os.getenv("WEBHOOK_URLS", "").split(",") if u.strip()],
        webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
        auto_monitor=_flag("AUTO_MONITOR"),
    )


def build_store(settings: OracleSettings):
    if settings.payment_store == "memory":
        return InMemoryPaymentStore()
    if settings.payment_store == "sheets":
        if not settings.sheets_api_base:
            raise ValueError("PAYMENT_STORE=sheets requires SHEETS_API_BASE")
        return SheetsPaymentStore(
            settings.sheets_api_base,
            sheet_id=settings.sheets_sheet_id,
            sheet_name=settings.sheets_sheet_name,
        )
    if settings.payment_store == "json":
        return JsonFilePaymentStore(settings.payments_path)
    raise ValueError(f"Unknown PAYMENT_STORE: {settings.payment_store}")


def build_engine(settings: Optional[OracleSettings] = None) -> PaymentOracle:
    """Wire the proof service, the journal and the collaborators into one oracle."""
    settings = settings or load_settings()
    os.makedirs(settings.data_dir, exist_ok=True)

    eventlog = EventLog(settings.eventlog_path) if settings.eventlog_enabled else None
    if eventlog is not None:
        eventlog.replay()
        nullifiers = NullifierSet(eventlog.nullifier_entries())
        tree = MerkleTree(eventlog.leaf_commitments())
    else:
        nullifiers, tree = NullifierSet(), MerkleTree()

    zk = ZKProofService(
        signer=ProofSigner.load_or_create(settings.proof_signing_key_path),
        nullifiers=nullifiers,
        tree=tree,
        tolerance=settings.amount_tolerance,
        journal=eventlog,
    )

    notifier = WebhookNotifier()
    for url in settings.webhook_urls:
        notifier.register_webhook(url, secret=settings.webhook_secret)

    if settings.witness_key_hex:
        witness_key = bytes.fromhex(settings.witness_key_hex)
    else:
        logger.warning("WITNESS_KEY_HEX not set; sealed witnesses will not survive a restart")
        witness_key = secrets.token_bytes(32)

    if not settings.merchant_address:
        logger.warning("MERCHANT_ADDRESS not set; payment requests and reconciliation are disabled")

    return PaymentOracle(
        source=SolanaRpcSource(
            settings.solana_rpc_url,
            timeout=settings.rpc_timeout_sec,
            max_retries=settings.rpc_max_retries,
        ),
        store=build_store(settings),
        notifier=notifier,
        zk=zk,
        merchant_address=settings.merchant_address,
        prices=CoinGeckoPriceSource(timeout=settings.rpc_timeout_sec),
        eventlog=eventlog,
        witness_key=witness_key,
        tolerance=settings.amount_tolerance,
        signature_limit=settings.signature_limit,
        poll_interval=settings.poll_interval_sec,
        payment_ttl=settings.payment_ttl_sec,
        expires_in=settings.payment_expires_in_sec,
    )
