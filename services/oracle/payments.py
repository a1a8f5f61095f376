# oracle/payments.py
"""
Payment reconciliation engine.

Holds the payment intents of one merchant, matches them against transactions
seen on chain, issues a proof for every match and moves the intent through

    pending -> verified -> refunded
    pending -> (deleted after the TTL)

Every change is written through to the payment store and announced through the
notifier. The in-memory copy is authoritative: a store failure is logged and
the record keeps its new state.
"""
from __future__ import annotations

import asyncio
import copy
import secrets
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Protocol

from services.api.logging_config import get_logger
from services.crypto_core.commitments import PaymentCommitments
from services.crypto_core.errors import AmountOutOfRangeError, DoubleSpendError
from services.crypto_core.witness_box import open_witness, seal_witness
from services.crypto_core.zk_proof import ZKProofService
from services.oracle.errors import (
    InvalidTransitionError,
    PaymentNotFoundError,
    PersistenceError,
    PriceUnavailableError,
    SignatureClaimedError,
    TransactionSourceError,
)
from services.oracle.matching import (
    DEFAULT_TOLERANCE,
    SOL_DEC,
    find_match,
    is_valid_signature,
    match_amount,
)

logger = get_logger("oracle")

STATUSES = ("pending", "verified", "failed", "refunded")

# ---------- collaborator contracts ----------


class TransactionSource(Protocol):
    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]: ...
    async def list_recent_signatures(self, address: str, limit: int = 100) -> List[str]: ...


class PriceSource(Protocol):
    async def get_price(self, token: str, currency: str = "USD") -> Decimal: ...


class EventJournal(Protocol):
    def append_event(self, kind: str, **payload) -> str: ...
    def claimed_signatures(self) -> Dict[str, str]: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


def _as_ms(v: Any) -> int:
    # sheet rows sometimes carry ISO strings or numeric strings
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return int(v)
    if isinstance(v, str) and v.strip():
        try:
            return int(float(v))
        except ValueError:
            try:
                return int(datetime.fromisoformat(v.replace("Z", "+00:00")).timestamp() * 1000)
            except ValueError:
                return 0
    return 0


def public_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Record as shown to API callers and webhooks."""
    return {k: copy.deepcopy(v) for k, v in record.items() if k != "sealedWitness"}


class PaymentOracle:
    def __init__(
        self,
        source: TransactionSource,
        store,
        notifier,
        zk: Optional[ZKProofService] = None,
        merchant_address: Optional[str] = None,
        *,
        prices: Optional[PriceSource] = None,
        eventlog: Optional[EventJournal] = None,
        witness_key: Optional[bytes] = None,
        tolerance: Decimal = DEFAULT_TOLERANCE,
        signature_limit: int = 100,
        poll_interval: float = 30.0,
        payment_ttl: float = 3600.0,
        expires_in: float = 900.0,
    ):
        self.source = source
        self.store = store
        self.notifier = notifier
        self.zk = zk or ZKProofService()
        self.merchant_address = merchant_address
        self.prices = prices
        self.eventlog = eventlog
        self.witness_key = witness_key or secrets.token_bytes(32)
        self.tolerance = Decimal(str(tolerance))
        self.signature_limit = signature_limit
        self.poll_interval = poll_interval
        self.payment_ttl_ms = int(payment_ttl * 1000)
        self.expires_in_ms = int(expires_in * 1000)

        self.payments: Dict[str, Dict[str, Any]] = {}
        self.commitments = PaymentCommitments()
        # signature -> payment id; a transaction settles at most one intent
        self.claimed: Dict[str, str] = dict(eventlog.claimed_signatures()) if eventlog is not None else {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._monitor_task: Optional[asyncio.Task] = None

    # =========================
    # Internals
    # =========================

    def _lock_for(self, payment_id: str) -> asyncio.Lock:
        lock = self._locks.get(payment_id)
        if lock is None:
            lock = self._locks[payment_id] = asyncio.Lock()
        return lock

    def _require(self, payment_id: str) -> Dict[str, Any]:
        record = self.payments.get(payment_id)
        if record is None:
            raise PaymentNotFoundError(payment_id)
        return record

    async def _persist(self, record: Mapping[str, Any]) -> None:
        try:
            await self.store.save(copy.deepcopy(dict(record)))
        except PersistenceError as e:
            logger.error(f"failed to persist payment {record.get('id')}: {e}")

    async def _forget(self, payment_id: str) -> None:
        self.payments.pop(payment_id, None)
        self._locks.pop(payment_id, None)
        try:
            await self.store.delete(payment_id)
        except PersistenceError as e:
            logger.warning(f"failed to delete payment {payment_id} from store: {e}")

    def _journal(self, kind: str, **payload) -> None:
        if self.eventlog is not None:
            self.eventlog.append_event(kind, **payload)

    def _release(self, signature: Optional[str], payment_id: str) -> None:
        if signature and self.claimed.get(signature) == payment_id:
            del self.claimed[signature]

    def _claim(self, signature: str, payment_id: str) -> bool:
        owner = self.claimed.get(signature)
        if owner is not None and owner != payment_id:
            return False
        self.claimed[signature] = payment_id
        return True

    async def _settle(self, payment_id: str, tx: Mapping[str, Any], amount: Decimal) -> bool:
        """Bind `tx` to the intent, prove it and mark it verified. False leaves it pending."""
        signature = tx["signature"]
        async with self._lock_for(payment_id):
            record = self.payments.get(payment_id)
            if record is None or record["status"] != "pending":
                return False
            if not self._claim(signature, payment_id):
                logger.info(f"{signature[:16]}... already settles {self.claimed[signature]}; skipping for {payment_id}")
                return False

            try:
                proof = self.zk.generate_zk_proof(signature, amount, record["solAmount"], strict_range=True)
            except (DoubleSpendError, AmountOutOfRangeError) as e:
                logger.warning(f"proof for {payment_id} rejected: {e}")
                self._release(signature, payment_id)
                return False

            if not proof["verified"]:
                logger.warning(f"proof {proof['id']} for {payment_id} did not verify; intent stays pending")
                self._release(signature, payment_id)
                return False

            record.update(
                status="verified",
                transactionSignature=signature,
                receivedAmount=float(amount),
                proof=self.zk.export_public_proof(proof),
                sealedWitness=seal_witness(self.witness_key, proof["id"], proof["_witness"]),
                confirmedAt=_now_ms(),
            )
            self._journal("PaymentVerified", signature=signature, payment_id=payment_id)
            await self._persist(record)
            view = public_record(record)

        self.notifier.trigger_event("payment.verified", view)
        logger.info(f"payment {payment_id} verified via {signature[:16]}... ({amount} {record['token']})")
        return True

    # =========================
    # Intents
    # =========================

    async def create_payment_request(
        self,
        amount: Any,
        currency: str = "USD",
        order_id: Optional[str] = None,
        token: str = "SOL",
        token_amount: Any = None,
        expires_in: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        allow_partial: bool = False,
    ) -> Dict[str, Any]:
        if not self.merchant_address:
            raise ValueError("merchant address is not configured")
        try:
            fiat = Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError):
            raise ValueError(f"invalid amount: {amount!r}")
        if fiat <= 0:
            raise ValueError("amount must be positive")
        token = (token or "SOL").upper()

        if token_amount is None:
            if self.prices is None:
                raise PriceUnavailableError(f"no price source configured for {token}")
            price = await self.prices.get_price(token, currency)
            due = (fiat / price).quantize(SOL_DEC)
        else:
            due = Decimal(str(token_amount)).quantize(SOL_DEC)
        if due <= 0:
            raise ValueError("token amount must be positive")

        now = _now_ms()
        ttl_ms = int(expires_in * 1000) if expires_in else self.expires_in_ms
        record = {
            "id": f"pay_{now}_{secrets.token_hex(5)}",
            "amount": float(fiat),
            "currency": currency.upper(),
            "token": token,
            "solAmount": float(due),
            "orderId": order_id,
            "merchantAddress": self.merchant_address,
            "status": "pending",
            "createdAt": now,
            "expiresAt": now + ttl_ms,
            "transactionSignature": None,
            "proof": None,
            "confirmedAt": None,
            "metadata": dict(metadata or {}),
            "allowPartial": bool(allow_partial),
            "refundAmount": None,
            "refundedAt": None,
        }
        self.payments[record["id"]] = record
        await self._persist(record)
        self.notifier.trigger_event("payment.created", public_record(record))
        logger.info(f"payment {record['id']} created: {fiat} {record['currency']} = {due} {token}")
        return record

    def get_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        return self.payments.get(payment_id)

    def get_all_payments(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = list(self.payments.values())
        if status:
            rows = [r for r in rows if r["status"] == status]
        return sorted(rows, key=lambda r: r.get("createdAt") or 0, reverse=True)

    def find_proof(self, proof_id: str) -> Optional[Dict[str, Any]]:
        """Public form of a proof, whether issued in this process or loaded with its record."""
        proof = self.zk.get_proof(proof_id)
        if proof is not None:
            return self.zk.export_public_proof(proof)
        for record in self.payments.values():
            p = record.get("proof")
            if p and p.get("id") == proof_id:
                return copy.deepcopy(p)
        return None

    # =========================
    # Verification
    # =========================

    async def monitor_payment(self, payment_id: str, signature: str) -> Dict[str, Any]:
        """
        Check one caller-supplied transaction against one intent.

        A transaction that is not visible yet stays bound to the intent and is
        re-checked by every reconciliation pass.
        """
        record = self._require(payment_id)
        if not is_valid_signature(signature):
            raise ValueError(f"invalid transaction signature: {signature}")
        if record["status"] == "verified" and record.get("transactionSignature") == signature:
            return record
        if record["status"] != "pending":
            raise InvalidTransitionError(f"payment {payment_id} is {record['status']}, not pending")
        owner = self.claimed.get(signature)
        if owner is not None and owner != payment_id:
            raise SignatureClaimedError(signature, owner)

        tx = await self.source.get_transaction(signature)
        if tx is None or not tx.get("confirmed"):
            async with self._lock_for(payment_id):
                if record["status"] == "pending" and self._claim(signature, payment_id):
                    previous = record.get("transactionSignature")
                    if previous and previous != signature:
                        self._release(previous, payment_id)
                    record["transactionSignature"] = signature
                    await self._persist(record)
            logger.info(f"{signature[:16]}... not confirmed yet; bound to {payment_id} for re-check")
            return record

        amount = match_amount(tx, record, self.merchant_address, self.tolerance)
        if amount is None:
            logger.info(f"{signature[:16]}... does not satisfy payment {payment_id}")
            return record
        await self._settle(payment_id, tx, amount)
        return record

    async def check_pending_payments(self) -> Dict[str, int]:
        """One reconciliation pass over every pending intent."""
        summary = {"pending": 0, "verified": 0, "errors": 0}
        if not self.merchant_address:
            return summary
        pending = [r for r in self.payments.values()
                   if r["status"] == "pending" and r.get("merchantAddress") == self.merchant_address]
        summary["pending"] = len(pending)
        if not pending:
            return summary

        # bound signatures are re-verified directly
        for record in [r for r in pending if r.get("transactionSignature")]:
            sig = record["transactionSignature"]
            try:
                tx = await self.source.get_transaction(sig)
            except TransactionSourceError as e:
                summary["errors"] += 1
                logger.warning(f"re-check of {sig[:16]}... for {record['id']} failed: {e}")
                continue
            amount = match_amount(tx or {}, record, self.merchant_address, self.tolerance)
            if amount is not None and await self._settle(record["id"], tx, amount):
                summary["verified"] += 1

        unbound = [r for r in pending if not r.get("transactionSignature") and r["status"] == "pending"]
        if not unbound:
            return summary

        try:
            signatures = await self.source.list_recent_signatures(self.merchant_address, self.signature_limit)
        except TransactionSourceError as e:
            summary["errors"] += 1
            logger.error(f"cannot list signatures for {self.merchant_address}: {e}")
            return summary

        transactions: List[Dict[str, Any]] = []
        for sig in signatures:
            if sig in self.claimed:
                continue
            try:
                tx = await self.source.get_transaction(sig)
            except TransactionSourceError as e:
                summary["errors"] += 1
                logger.warning(f"skipping {sig[:16]}...: {e}")
                continue
            if tx and tx.get("confirmed"):
                transactions.append(tx)

        for record in unbound:
            hit = find_match(record, transactions, self.merchant_address, self.claimed.keys(), self.tolerance)
            if hit is None:
                continue
            tx, amount = hit
            if await self._settle(record["id"], tx, amount):
                summary["verified"] += 1

        if summary["verified"]:
            logger.info(f"reconciliation: {summary['verified']}/{summary['pending']} pending payments verified")
        return summary

    # =========================
    # Refunds & housekeeping
    # =========================

    async def process_refund(self, payment_id: str, amount: Any = None, reason: Optional[str] = None) -> Dict[str, Any]:
        record = self._require(payment_id)
        async with self._lock_for(payment_id):
            if record["status"] != "verified":
                raise InvalidTransitionError(f"can only refund verified payments; {payment_id} is {record['status']}")
            refund_amount = Decimal(str(amount if amount is not None else record["solAmount"])).quantize(SOL_DEC)
            if refund_amount <= 0:
                raise ValueError("refund amount must be positive")
            if refund_amount > Decimal(str(record["solAmount"])).quantize(SOL_DEC):
                raise ValueError("refund amount exceeds the payment amount")

            now = _now_ms()
            refund = {
                "id": f"refund_{now}_{secrets.token_hex(5)}",
                "paymentId": payment_id,
                "amount": float(refund_amount),
                "reason": reason,
                "status": "pending",
                "createdAt": now,
            }
            record.update(status="refunded", refundAmount=refund["amount"], refundedAt=now, refundReason=reason)
            self._journal("PaymentRefunded", payment_id=payment_id, refund_id=refund["id"], amount=refund["amount"])
            await self._persist(record)

        self.notifier.trigger_event("payment.refunded", refund)
        logger.info(f"payment {payment_id} refunded {refund['amount']} {record['token']}")
        return refund

    async def cleanup_expired_payments(self) -> List[str]:
        """Drop pending intents older than the TTL, in memory and in the store."""
        now = _now_ms()
        expired = [r for r in self.payments.values()
                   if r["status"] == "pending" and now - _as_ms(r.get("createdAt")) > self.payment_ttl_ms]
        removed: List[str] = []
        for record in expired:
            async with self._lock_for(record["id"]):
                if record["status"] != "pending":
                    continue
                self._release(record.get("transactionSignature"), record["id"])
            await self._forget(record["id"])
            self._journal("PaymentExpired", payment_id=record["id"])
            self.notifier.trigger_event("payment.expired", public_record(record))
            removed.append(record["id"])

        # rows that only live in the store
        try:
            stored = await self.store.load_all()
        except PersistenceError as e:
            logger.warning(f"cannot scan store for expired payments: {e}")
            stored = []
        for row in stored:
            pid = row.get("id")
            if not pid or pid in removed or pid in self.payments:
                continue
            if row.get("status") == "pending" and now - _as_ms(row.get("createdAt")) > self.payment_ttl_ms:
                await self._forget(pid)
                removed.append(pid)

        if removed:
            logger.info(f"cleaned up {len(removed)} expired pending payment(s)")
        return removed

    async def cleanup_duplicate_payments(self) -> List[str]:
        """
        Collapse duplicates.

        Same orderId: keep the verified one first, else the newest. Same
        verified transactionSignature: keep the first seen.
        """
        rows: Dict[str, Dict[str, Any]] = {}
        try:
            for row in await self.store.load_all():
                if row.get("id"):
                    rows[row["id"]] = row
        except PersistenceError as e:
            logger.warning(f"cannot scan store for duplicates: {e}")
        rows.update(self.payments)

        deleted: List[str] = []

        by_order: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows.values():
            if row.get("orderId"):
                by_order.setdefault(str(row["orderId"]), []).append(row)
        for order_id, group in by_order.items():
            if len(group) < 2:
                continue
            group.sort(key=lambda r: (r.get("status") != "verified", -_as_ms(r.get("createdAt"))))
            logger.info(f"order {order_id}: keeping {group[0]['id']}, dropping {len(group) - 1} duplicate(s)")
            for dup in group[1:]:
                deleted.append(dup["id"])

        by_sig: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows.values():
            if row["id"] in deleted:
                continue
            if row.get("status") == "verified" and row.get("transactionSignature"):
                by_sig.setdefault(row["transactionSignature"], []).append(row)
        for sig, group in by_sig.items():
            if len(group) < 2:
                continue
            keep = group[0]
            self.claimed[sig] = keep["id"]
            logger.info(f"tx {sig[:16]}...: keeping {keep['id']}, dropping {len(group) - 1} duplicate(s)")
            deleted.extend(dup["id"] for dup in group[1:])

        for pid in deleted:
            record = self.payments.get(pid)
            if record is not None:
                self._release(record.get("transactionSignature"), pid)
            await self._forget(pid)
        if deleted:
            logger.info(f"deleted {len(deleted)} duplicate payment(s)")
        return deleted

    async def load_payments_from_storage(self) -> int:
        """Merge stored records into memory; returns how many were added."""
        try:
            rows = await self.store.load_all()
        except PersistenceError as e:
            logger.error(f"cannot load payments: {e}")
            return 0
        added = 0
        for row in rows:
            pid = row.get("id")
            if not pid or pid in self.payments:
                continue
            row["createdAt"] = _as_ms(row.get("createdAt"))
            row.setdefault("status", "pending")
            self.payments[pid] = row
            if row.get("paymentCommitment"):
                self.commitments.restore(pid, row["paymentCommitment"])
            sig = row.get("transactionSignature")
            if sig and row["status"] in ("pending", "verified", "refunded"):
                self.claimed.setdefault(sig, pid)
            added += 1
        logger.info(f"loaded {added} payment(s) from storage ({len(self.payments)} in memory)")
        return added

    # =========================
    # Audit & commitments
    # =========================

    def audit_payment(self, payment_id: str) -> Dict[str, Any]:
        """
        Open the sealed witness of a settled payment and replay it.

        `proofValid` re-checks the stored public proof; `witnessMatches` checks
        that the proof commits to the bound transaction and the received amount.
        Raises ValueError when the witness cannot be opened with this key.
        """
        record = self._require(payment_id)
        proof, sealed = record.get("proof"), record.get("sealedWitness")
        if not proof or not sealed:
            raise InvalidTransitionError(f"payment {payment_id} has no sealed proof ({record['status']})")
        witness = open_witness(self.witness_key, proof["id"], sealed)
        result = {
            "paymentId": payment_id,
            "proofId": proof["id"],
            "status": record["status"],
            "proofValid": self.zk.verify_zk_proof(proof),
            "witnessMatches": self.zk.verify_proof_for_transaction(
                proof, record["transactionSignature"], record["receivedAmount"], witness=witness
            ),
        }
        logger.info(f"audit {payment_id}: proof={result['proofValid']} witness={result['witnessMatches']}")
        return result

    async def commit_payment(self, payment_id: str) -> Dict[str, Any]:
        """Issue a payer-held commitment over (id, amount, token); the secret is returned once."""
        record = self._require(payment_id)
        async with self._lock_for(payment_id):
            issued = self.commitments.generate_commitment(payment_id, record["solAmount"], record["token"])
            record["paymentCommitment"] = self.commitments.create_proof(payment_id)
            await self._persist(record)
        return issued

    async def verify_payment_commitment(self, payment_id: str, secret: str) -> Dict[str, Any]:
        record = self._require(payment_id)
        async with self._lock_for(payment_id):
            result = self.commitments.verify_commitment(payment_id, record["solAmount"], record["token"], secret)
            if result["valid"]:
                record["paymentCommitment"] = self.commitments.create_proof(payment_id)
                await self._persist(record)
        return result

    def commitment_proof(self, payment_id: str) -> Optional[Dict[str, Any]]:
        self._require(payment_id)
        return self.commitments.create_proof(payment_id)

    # =========================
    # Monitoring
    # =========================

    @property
    def monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def _monitor_loop(self) -> None:
        while True:
            try:
                await self.check_pending_payments()
                await self.cleanup_expired_payments()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("reconciliation pass failed")
            await asyncio.sleep(self.poll_interval)

    def start_monitoring(self) -> None:
        if self.monitoring:
            return
        logger.info(f"monitoring {self.merchant_address} every {self.poll_interval}s")
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor_loop())

    async def stop_monitoring(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("monitoring stopped")

    def stats(self) -> Dict[str, Any]:
        by_status = {s: 0 for s in STATUSES}
        for r in self.payments.values():
            by_status[r["status"]] = by_status.get(r["status"], 0) + 1
        return {
            "total": len(self.payments),
            "byStatus": by_status,
            "claimedSignatures": len(self.claimed),
            "monitoring": self.monitoring,
            "merchantAddress": self.merchant_address,
            "proofs": self.zk.get_proof_stats(),
        }
