# services/api/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from services.api.config import build_engine, load_settings
from services.api.health_checks import comprehensive_health_check, liveness_check, readiness_check
from services.api.logging_config import get_logger, setup_logging
from services.oracle.errors import (
    InvalidTransitionError,
    PaymentNotFoundError,
    PriceUnavailableError,
    SignatureClaimedError,
    TransactionSourceError,
)
from services.oracle.payments import PaymentOracle, public_record

from .schemas_api import (
    AggregateRes,
    AuditRes,
    CleanupRes,
    CommitmentVerifyReq,
    DisclosureRes,
    MerkleStatus,
    MetricRow,
    PaymentCreateReq,
    PaymentList,
    ProofVerifyReq,
    ProofVerifyRes,
    ReconcileRes,
    RefundReq,
    RefundRes,
    VerifyReq,
    VerifyRes,
)

logger = get_logger("api")


def _oracle(request: Request) -> PaymentOracle:
    return request.app.state.oracle


def _payment_or_404(oracle: PaymentOracle, payment_id: str) -> Dict[str, Any]:
    record = oracle.get_payment(payment_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return record


def create_app(oracle: Optional[PaymentOracle] = None, monitor: Optional[bool] = None) -> FastAPI:
    """
    Build the HTTP host.

    Without an injected oracle the engine is assembled from the environment at
    start-up, stored payments are loaded and, unless AUTO_MONITOR=0, the
    reconciliation loop is started.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        engine = oracle
        auto = monitor
        if engine is None:
            settings = load_settings()
            engine = build_engine(settings)
            await engine.load_payments_from_storage()
            auto = settings.auto_monitor if auto is None else auto
        app.state.oracle = engine
        logger.info(f"oracle API up: merchant={engine.merchant_address} payments={len(engine.payments)}")
        if auto and engine.merchant_address:
            engine.start_monitoring()
        try:
            yield
        finally:
            await engine.stop_monitoring()
            drain = getattr(engine.notifier, "drain", None)
            if drain is not None:
                await drain()

    app = FastAPI(title="ZK Payment Oracle API", version="0.1.0", lifespan=lifespan)
    if oracle is not None:
        app.state.oracle = oracle

    # =========================
    # Payments
    # =========================

    @app.post("/payments")
    async def create_payment(req: PaymentCreateReq, request: Request):
        engine = _oracle(request)
        try:
            record = await engine.create_payment_request(
                req.amount,
                currency=req.currency,
                order_id=req.order_id,
                token=req.token,
                token_amount=req.token_amount,
                expires_in=req.expires_in,
                metadata=req.metadata,
                allow_partial=req.allow_partial,
            )
        except PriceUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return public_record(record)

    @app.get("/payments", response_model=PaymentList)
    def list_payments(request: Request, status: Optional[str] = None):
        rows = [public_record(r) for r in _oracle(request).get_all_payments(status)]
        return PaymentList(payments=rows, total=len(rows))

    @app.post("/payments/cleanup", response_model=CleanupRes)
    async def cleanup_payments(request: Request):
        engine = _oracle(request)
        expired = await engine.cleanup_expired_payments()
        duplicates = await engine.cleanup_duplicate_payments()
        return CleanupRes(expired=expired, duplicates=duplicates)

    @app.get("/payments/{payment_id}")
    def get_payment(payment_id: str, request: Request):
        return public_record(_payment_or_404(_oracle(request), payment_id))

    @app.post("/payments/{payment_id}/verify", response_model=VerifyRes)
    async def verify_payment(payment_id: str, req: VerifyReq, request: Request):
        engine = _oracle(request)
        try:
            record = await engine.monitor_payment(payment_id, req.signature)
        except PaymentNotFoundError:
            raise HTTPException(status_code=404, detail="Payment not found")
        except SignatureClaimedError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except TransactionSourceError as e:
            raise HTTPException(status_code=502, detail=f"Transaction lookup failed: {e}")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return VerifyRes(verified=record["status"] == "verified", payment=public_record(record))

    @app.post("/payments/{payment_id}/refund", response_model=RefundRes)
    async def refund_payment(payment_id: str, request: Request, req: Optional[RefundReq] = None):
        engine = _oracle(request)
        req = req or RefundReq()
        try:
            refund = await engine.process_refund(payment_id, amount=req.amount, reason=req.reason)
        except PaymentNotFoundError:
            raise HTTPException(status_code=404, detail="Payment not found")
        except (InvalidTransitionError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return RefundRes(refund=refund, payment=public_record(engine.get_payment(payment_id)))

    @app.get("/payments/{payment_id}/audit", response_model=AuditRes)
    def audit_payment(payment_id: str, request: Request):
        try:
            return _oracle(request).audit_payment(payment_id)
        except PaymentNotFoundError:
            raise HTTPException(status_code=404, detail="Payment not found")
        except InvalidTransitionError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.post("/payments/{payment_id}/commitment")
    async def issue_commitment(payment_id: str, request: Request):
        try:
            return await _oracle(request).commit_payment(payment_id)
        except PaymentNotFoundError:
            raise HTTPException(status_code=404, detail="Payment not found")

    @app.get("/payments/{payment_id}/commitment")
    def get_commitment(payment_id: str, request: Request):
        try:
            proof = _oracle(request).commitment_proof(payment_id)
        except PaymentNotFoundError:
            raise HTTPException(status_code=404, detail="Payment not found")
        if proof is None:
            raise HTTPException(status_code=404, detail="No commitment issued for this payment")
        return proof

    @app.post("/payments/{payment_id}/commitment/verify")
    async def verify_commitment(payment_id: str, req: CommitmentVerifyReq, request: Request):
        try:
            return await _oracle(request).verify_payment_commitment(payment_id, req.secret)
        except PaymentNotFoundError:
            raise HTTPException(status_code=404, detail="Payment not found")

    @app.post("/reconcile", response_model=ReconcileRes)
    async def reconcile(request: Request):
        summary = await _oracle(request).check_pending_payments()
        return ReconcileRes(**summary)

    # =========================
    # Proofs
    # =========================

    @app.get("/zk/proofs/{proof_id}")
    def get_proof(proof_id: str, request: Request):
        proof = _oracle(request).find_proof(proof_id)
        if proof is None:
            raise HTTPException(status_code=404, detail="Proof not found")
        return proof

    @app.get("/zk/proofs/{proof_id}/disclose", response_model=DisclosureRes)
    def disclose_proof(proof_id: str, request: Request, reveal_amount: bool = False):
        engine = _oracle(request)
        proof = engine.zk.get_proof(proof_id) or engine.find_proof(proof_id)
        if proof is None:
            raise HTTPException(status_code=404, detail="Proof not found")
        return engine.zk.selective_disclosure(proof, reveal_amount=reveal_amount)

    @app.post("/zk/verify", response_model=ProofVerifyRes)
    def verify_proof(req: ProofVerifyReq, request: Request):
        zk = _oracle(request).zk
        if req.proof_id:
            proof = zk.get_proof(req.proof_id)
            if proof is None:
                raise HTTPException(status_code=404, detail="Proof not found in this service instance")
        elif req.proof:
            proof = req.proof
        else:
            raise HTTPException(status_code=400, detail="proof_id or proof is required")
        return ProofVerifyRes(proof_id=proof.get("id"), valid=zk.verify_zk_proof(proof))

    @app.get("/zk/stats")
    def proof_stats(request: Request):
        return _oracle(request).zk.get_proof_stats()

    @app.get("/zk/aggregate", response_model=AggregateRes)
    def aggregate(request: Request):
        engine = _oracle(request)
        proofs = [r["proof"] for r in engine.get_all_payments() if r.get("proof")]
        return engine.zk.aggregate_proofs(proofs)

    @app.get("/zk/public-key")
    def public_key(request: Request):
        return {"curve": "P-256", "pem": _oracle(request).zk.public_key_pem()}

    # ---------- Merkle Status ----------
    @app.get("/merkle/status", response_model=MerkleStatus)
    def merkle_status(request: Request):
        engine = _oracle(request)
        return MerkleStatus(
            leaves=len(engine.zk.tree),
            root_hex=engine.zk.merkle_root,
            nullifiers=len(engine.zk.nullifiers),
            claimed_signatures=len(engine.claimed),
        )

    @app.get("/metrics", response_model=List[MetricRow])
    def metrics(request: Request):
        ev = _oracle(request).eventlog
        if ev is None:
            return []
        return [
            MetricRow(epoch=r[0], issued_count=r[1], verified_count=r[2], refunded_count=r[3], updated_at=r[4])
            for r in ev.metrics_all()
        ]

    # =========================
    # Webhooks
    # =========================

    @app.post("/webhooks")
    def register_webhook(request: Request, payload: Dict[str, Any] = Body(...)):
        url = payload.get("url")
        if not url:
            raise HTTPException(status_code=400, detail="url is required")
        hook = _oracle(request).notifier.register_webhook(url, payload.get("events"), payload.get("secret"))
        return {k: v for k, v in hook.items() if k != "secret"}

    @app.get("/webhooks")
    def list_webhooks(request: Request):
        return {"webhooks": _oracle(request).notifier.list_webhooks()}

    @app.delete("/webhooks/{webhook_id}")
    def delete_webhook(webhook_id: str, request: Request):
        if not _oracle(request).notifier.delete_webhook(webhook_id):
            raise HTTPException(status_code=404, detail="Webhook not found")
        return {"status": "ok", "deleted": webhook_id}

    # =========================
    # Health
    # =========================

    @app.get("/health")
    async def health(request: Request):
        return await comprehensive_health_check(_oracle(request))

    @app.get("/health/ready")
    async def ready(request: Request):
        if await readiness_check(_oracle(request)):
            return {"status": "ready"}
        return JSONResponse(status_code=503, content={"status": "not_ready"})

    @app.get("/health/live")
    async def live():
        return {"status": "alive" if await liveness_check() else "dead"}

    @app.get("/stats")
    def stats(request: Request):
        return _oracle(request).stats()

    return app


app = create_app()
