from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, condecimal


class _Base(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


class Ok(_Base):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


class MerkleStatus(_Base):
    leaves: conint(ge=0) = Field(..., description="Number of commitments in the accumulator.")
    root_hex: str = Field(..., description="Current Merkle root (hex).")
    nullifiers: conint(ge=0) = Field(..., description="Count of used nullifiers.")
    claimed_signatures: conint(ge=0) = Field(..., description="Transactions already bound to a payment.")


class MetricRow(_Base):
    epoch: conint(ge=0) = Field(..., description="Minute-bucket epoch.")
    issued_count: conint(ge=0) = Field(..., description="Proofs issued in this epoch.")
    verified_count: conint(ge=0) = Field(..., description="Payments verified in this epoch.")
    refunded_count: conint(ge=0) = Field(..., description="Payments refunded in this epoch.")
    updated_at: str = Field(..., description="ISO-8601 timestamp (UTC).")


# ---------- payments ----------

class PaymentCreateReq(_Base):
    amount: condecimal(gt=0) = Field(..., description="Price in fiat units.")
    currency: str = Field("USD", description="Fiat currency of `amount`.")
    order_id: Optional[str] = Field(None, description="Merchant order reference.")
    token: str = Field("SOL", description="Token the customer pays with (SOL, USDC, USDT or a mint).")
    token_amount: Optional[condecimal(gt=0)] = Field(None, description="Amount due in `token`; priced from the feed when omitted.")
    expires_in: Optional[conint(gt=0)] = Field(None, description="Seconds until the request expires.")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Opaque merchant data.")
    allow_partial: bool = Field(False, description="Whether partial payments are acceptable.")


class PaymentList(_Base):
    payments: List[Dict[str, Any]] = Field(default_factory=list)
    total: conint(ge=0) = 0


class VerifyReq(_Base):
    signature: str = Field(..., description="Base58 transaction signature paying this request.")


class VerifyRes(Ok):
    verified: bool = Field(..., description="Whether the payment is now verified.")
    payment: Dict[str, Any] = Field(..., description="Payment record after the check.")


class RefundReq(_Base):
    amount: Optional[condecimal(gt=0)] = Field(None, description="Token amount to refund; the full amount when omitted.")
    reason: Optional[str] = Field(None, description="Free-form reason.")


class RefundRes(Ok):
    refund: Dict[str, Any]
    payment: Dict[str, Any]


class CleanupRes(Ok):
    expired: List[str] = Field(default_factory=list)
    duplicates: List[str] = Field(default_factory=list)


class ReconcileRes(Ok):
    pending: conint(ge=0)
    verified: conint(ge=0)
    errors: conint(ge=0)


# ---------- proofs ----------

class ProofVerifyReq(_Base):
    proof_id: Optional[str] = Field(None, description="Id of a proof issued by this service.")
    proof: Optional[Dict[str, Any]] = Field(None, description="Full proof object (must carry its signature).")


class ProofVerifyRes(_Base):
    proof_id: Optional[str] = None
    valid: bool


class DisclosureRes(_Base):
    id: str
    commitment: str
    nullifier: str
    merkleRoot: str
    expectedAmount: float
    timestamp: int
    verified: bool
    features: Dict[str, bool]
    amount: Optional[float] = None


class AggregateRes(_Base):
    totalProofs: conint(ge=0)
    totalExpectedAmount: float
    merkleRoot: str
    nullifiers: List[Optional[str]]
    commitments: List[Optional[str]]
    timestampRange: Dict[str, Optional[int]]


# ---------- audit & commitments ----------

class AuditRes(_Base):
    paymentId: str
    proofId: str
    status: str
    proofValid: bool = Field(..., description="Stored public proof still verifies.")
    witnessMatches: bool = Field(..., description="Sealed witness commits to the bound transaction and amount.")


class CommitmentVerifyReq(_Base):
    secret: str = Field(..., description="Secret handed out when the commitment was issued.")
