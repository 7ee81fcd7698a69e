"""
Job, transaction and status schema.

JobDetails mirrors the on-chain job record. TransactionResult is what every
write returns once a transaction was broadcast. MirrorRecord is the off-chain
status row kept by the reconciler (display and reconciliation only, never
authoritative for funds).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from escrowpay.errors import LedgerRejection, rejection_from_reason

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_JOB_ID = 2**64 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobDetails(BaseModel):
    """On-chain job record. An unknown job id reads as the zero value (payer == ZERO_ADDRESS)."""

    job_id: int = Field(..., ge=0, le=MAX_JOB_ID)
    payer: str = Field(ZERO_ADDRESS, description="Funds the job; only address allowed to complete/cancel")
    payee: str = Field(ZERO_ADDRESS, description="Receives nativeAmount minus the platform fee")
    usd_amount: int = Field(0, description="Fixed-point USD (USD_DECIMALS) recorded at post time")
    native_amount: int = Field(0, description="Wei computed once at post time, never re-priced")
    is_completed: bool = False
    is_paid: bool = False

    @classmethod
    def absent(cls, job_id: int) -> "JobDetails":
        return cls(job_id=job_id)

    @property
    def exists(self) -> bool:
        return self.payer.lower() != ZERO_ADDRESS


class TransactionResult(BaseModel):
    """Outcome of a broadcast write. success=False carries the decoded revert reason when available."""

    tx_hash: str
    block_number: int = 0
    gas_used: int = 0
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = Field(None, description="Rejection class name, e.g. AlreadyCompleted")

    def rejection(self) -> Optional[LedgerRejection]:
        if self.success or not self.error:
            return None
        return rejection_from_reason(self.error)


class Stage(str, Enum):
    """The three lifecycle transitions tracked by the mirror."""

    DEPOSIT = "deposit"
    RELEASE = "release"
    REFUND = "refund"

    @property
    def initiated(self) -> "PaymentStatus":
        return PaymentStatus(f"{self.value}_initiated")

    @property
    def confirmed(self) -> "PaymentStatus":
        return {
            Stage.DEPOSIT: PaymentStatus.DEPOSITED,
            Stage.RELEASE: PaymentStatus.RELEASED,
            Stage.REFUND: PaymentStatus.REFUNDED,
        }[self]

    @property
    def hash_field(self) -> str:
        return f"tx_hash_{self.value}"


class PaymentStatus(str, Enum):
    NONE = "none"
    DEPOSIT_INITIATED = "deposit_initiated"
    DEPOSITED = "deposited"
    RELEASE_INITIATED = "release_initiated"
    RELEASED = "released"
    REFUND_INITIATED = "refund_initiated"
    REFUNDED = "refunded"

    @property
    def stage(self) -> Optional[Stage]:
        if self is PaymentStatus.NONE:
            return None
        for stage in Stage:
            if self in (stage.initiated, stage.confirmed):
                return stage
        return None

    @property
    def is_initiated(self) -> bool:
        return self.value.endswith("_initiated")


class MirrorRecord(BaseModel):
    """Persisted status row, keyed by job id. Never deleted."""

    job_id: int
    payment_status: PaymentStatus = PaymentStatus.NONE
    tx_hash_deposit: Optional[str] = None
    tx_hash_release: Optional[str] = None
    tx_hash_refund: Optional[str] = None
    usd_amount: Optional[int] = None
    divergence: Optional[str] = Field(None, description="Set by the reconciler; cleared only by a verified confirmation")
    updated_at: datetime = Field(default_factory=utcnow)

    def tx_hash_for(self, stage: Stage) -> Optional[str]:
        return getattr(self, stage.hash_field)


# --- HTTP bodies ---

class PostJobRequest(BaseModel):
    """Body for POST /post-job (offer accepted, fund escrow)."""

    job_id: int = Field(..., ge=0, le=MAX_JOB_ID)
    payee_address: str = Field(..., description="Freelancer wallet")
    usd_amount: str = Field(..., description="Agreed USD amount, decimal string e.g. '1000' or '12.50'")
    payer_address: str = Field(..., description="Client wallet")


class JobStatusResponse(BaseModel):
    job_id: int
    payment_status: PaymentStatus
    usd_amount: Optional[str] = None
    tx_hash_deposit: Optional[str] = None
    tx_hash_release: Optional[str] = None
    tx_hash_refund: Optional[str] = None
    divergence: Optional[str] = None
    updated_at: Optional[datetime] = None
    as_of: datetime = Field(default_factory=utcnow, description="When this mirror snapshot was read")
