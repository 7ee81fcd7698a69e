"""
escrowpay - escrow payment gateway for a freelance marketplace.

Locks a USD-denominated payment as ETH in an on-chain escrow when an offer is
accepted, releases it (minus a 5% platform fee) when work is approved, or
refunds it on cancellation. A persisted status mirror tracks each job's
payment lifecycle and is reconciled against the ledger, which stays the
source of truth.
"""

__version__ = "0.1.0"

from escrowpay.errors import (
    EscrowError,
    LedgerRejection,
    TransactionTimeout,
    ValidationError,
)
from escrowpay.schema import JobDetails, MirrorRecord, PaymentStatus, Stage, TransactionResult
from escrowpay.config import Settings
from escrowpay.wallet import GatewayWallet
from escrowpay.oracle import PriceOracle, usd_to_fixed
from escrowpay.ledger import JobLedger
from escrowpay.orchestrator import TransactionOrchestrator
from escrowpay.reconciler import StatusReconciler
from escrowpay.gateway import EscrowGateway, build_gateway

__all__ = [
    "__version__",
    "EscrowError",
    "LedgerRejection",
    "TransactionTimeout",
    "ValidationError",
    "JobDetails",
    "MirrorRecord",
    "PaymentStatus",
    "Stage",
    "TransactionResult",
    "Settings",
    "GatewayWallet",
    "PriceOracle",
    "usd_to_fixed",
    "JobLedger",
    "TransactionOrchestrator",
    "StatusReconciler",
    "EscrowGateway",
    "build_gateway",
]
