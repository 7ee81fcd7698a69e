"""
Ledger client interface shared by the local chain and the deployed contract.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from escrowpay.oracle import PriceOracle
from escrowpay.schema import JobDetails
from escrowpay.wallet import GatewayWallet

POST = "post"
COMPLETE = "complete"
CANCEL = "cancel"
WRITE_OPS = (POST, COMPLETE, CANCEL)


@dataclass
class LedgerCall:
    """One ledger-mutating call. ``args`` are op-specific (post: payee, usd_amount, payer)."""

    op: str
    job_id: int
    args: Dict[str, Any] = field(default_factory=dict)
    value: int = 0


@dataclass
class Receipt:
    tx_hash: str
    block_number: int
    gas_used: int
    status: int
    revert_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == 1


class LedgerClient(Protocol):
    oracle: PriceOracle

    def get_details(self, job_id: int) -> JobDetails:
        ...

    def simulate(self, call: LedgerCall, sender: str) -> None:
        """Dry-run against current state. Raises the LedgerRejection the ledger would revert with."""
        ...

    def send(self, call: LedgerCall, wallet: GatewayWallet) -> str:
        """Sign and broadcast. Returns the tx hash or raises SubmissionError."""
        ...

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        """Block until mined or raise TransactionTimeout. Never cancels the transaction."""
        ...
