"""
Error taxonomy for the escrow gateway.

Validation errors are raised before any transaction is built. Ledger
rejections carry the revert reason exactly as the ledger reports it and are
final. Transient errors (price feed, submission, timeout) may be retried by
the caller; a timeout means "outcome unknown, reconcile later".
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Type


class EscrowError(Exception):
    """Base class for every error raised by escrowpay."""


class ConfigError(EscrowError):
    """Missing or invalid configuration."""


class ValidationError(EscrowError):
    """Request rejected before a transaction was built."""


# --- Ledger rejections (revert reasons) ---

class LedgerRejection(EscrowError):
    """The ledger refused a call. ``reason`` is the revert string."""

    reason = "execution reverted"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or self.reason
        super().__init__(self.reason)


class Unauthorized(LedgerRejection):
    reason = "Only the payer can perform this action"


class AlreadyCompleted(LedgerRejection):
    reason = "Job already completed"


class AlreadyPaid(LedgerRejection):
    reason = "Job already paid"


class InsufficientFunds(LedgerRejection):
    reason = "Insufficient ETH sent"


class JobAlreadyExists(LedgerRejection):
    reason = "Job already exists"


class JobNotFound(LedgerRejection):
    reason = "Job does not exist"


_REJECTIONS: Dict[str, Type[LedgerRejection]] = {
    cls.reason.lower(): cls
    for cls in (Unauthorized, AlreadyCompleted, AlreadyPaid, InsufficientFunds, JobAlreadyExists, JobNotFound)
}


def rejection_from_reason(reason: Optional[str]) -> LedgerRejection:
    """Map a revert string (possibly wrapped, e.g. "execution reverted: ...") to its rejection class."""
    text = (reason or "").strip()
    lowered = text.lower()
    for known, cls in _REJECTIONS.items():
        if known in lowered:
            return cls(cls.reason)
    if lowered.startswith("execution reverted:"):
        text = text.split(":", 1)[1].strip()
    return LedgerRejection(text or None)


class TransferFailed(EscrowError):
    """A native-asset transfer inside the ledger failed. Never escapes without rollback."""


# --- Transient infrastructure errors ---

class PriceUnavailable(EscrowError):
    """Price feed read failed or returned a non-positive price."""


class SubmissionError(EscrowError):
    """Transaction could not be built, signed or broadcast."""


class TransactionTimeout(EscrowError):
    """
    Deadline elapsed while waiting. The transaction, if broadcast, is NOT
    cancelled: treat as unknown outcome and reconcile from ledger state.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class ReceiptUnavailable(TransactionTimeout):
    """The receipt wait failed after broadcast (RPC error). Outcome unknown, same as a timeout."""


# --- Status mirror ---

class MirrorError(EscrowError):
    """Status mirror failure (never authoritative for funds)."""


class MirrorRecordNotFound(MirrorError):
    pass


class InvalidTransition(MirrorError):
    """Requested status change is not in the allowed-transition table."""


@dataclass
class DivergenceDetected(Exception):
    """Ledger state contradicts the transition the mirror is waiting for."""

    job_id: int
    status: str
    reason: str
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        return f"job {self.job_id} ({self.status}): {self.reason}"
