"""
Job ledger: the authoritative escrow state machine.

    Absent -> Posted -> Completed+Paid   (complete: fee to owner, rest to payee)
                     -> Deleted          (cancel: nativeAmount back to payer)

Every mutating call runs under one lock (the ledger serializes all writes, so
two concurrent completes yield one success and one AlreadyCompleted) and
inside a snapshot: if any transfer fails, jobs and balances are restored and
the error propagates. This is the reference the local backend mines into; the
deployed contract enforces the same rules and revert strings.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Dict, Iterator, Optional, Set

from web3 import Web3

from escrowpay.errors import (
    AlreadyCompleted,
    AlreadyPaid,
    InsufficientFunds,
    JobAlreadyExists,
    TransferFailed,
    Unauthorized,
)
from escrowpay.oracle import PriceOracle
from escrowpay.schema import ZERO_ADDRESS, JobDetails

logger = logging.getLogger(__name__)

FEE_PERCENT = 5
LEDGER_ADDRESS = Web3.to_checksum_address("0x000000000000000000000000000000000000e5c0")


class ExcessPolicy(str, Enum):
    """What happens to funds sent above the converted amount at post time."""

    RETAIN = "retain"  # kept by the ledger as surplus (deployed contract behaviour)
    REFUND = "refund"  # returned to the sender in the same call


def platform_fee(native_amount: int) -> int:
    return native_amount * FEE_PERCENT // 100


def _addr(address: str) -> str:
    return Web3.to_checksum_address(address)


class Treasury:
    """Native-asset balances of every account the ledger touches, including the ledger itself."""

    def __init__(self, ledger_address: str = LEDGER_ADDRESS):
        self.ledger_address = _addr(ledger_address)
        self._balances: Dict[str, int] = {}
        # Accounts whose receive hook reverts (e.g. contracts without a payable fallback)
        self.rejecting: Set[str] = set()

    def balance_of(self, address: str) -> int:
        return self._balances.get(_addr(address), 0)

    @property
    def held(self) -> int:
        return self.balance_of(self.ledger_address)

    def mint(self, address: str, amount: int) -> None:
        """Credit an account out of thin air (local chain genesis / faucet)."""
        addr = _addr(address)
        self._balances[addr] = self._balances.get(addr, 0) + amount

    def transfer(self, src: str, dst: str, amount: int) -> None:
        src, dst = _addr(src), _addr(dst)
        if amount < 0:
            raise TransferFailed(f"negative transfer {amount}")
        if self._balances.get(src, 0) < amount:
            raise TransferFailed(f"{src} balance {self._balances.get(src, 0)} < {amount}")
        if dst in self.rejecting:
            raise TransferFailed(f"{dst} rejected transfer of {amount}")
        self._balances[src] -= amount
        self._balances[dst] = self._balances.get(dst, 0) + amount

    def pay_out(self, dst: str, amount: int) -> None:
        self.transfer(self.ledger_address, dst, amount)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._balances)

    def restore(self, snapshot: Dict[str, int]) -> None:
        self._balances = dict(snapshot)


class JobLedger:
    def __init__(
        self,
        oracle: PriceOracle,
        owner: str,
        treasury: Optional[Treasury] = None,
        excess_policy: ExcessPolicy = ExcessPolicy.RETAIN,
    ):
        self.oracle = oracle
        self.owner = _addr(owner)
        self.treasury = treasury or Treasury()
        self.excess_policy = excess_policy
        self._jobs: Dict[int, JobDetails] = {}
        self._surplus: Dict[int, int] = {}
        self._lock = threading.RLock()

    @property
    def address(self) -> str:
        return self.treasury.ledger_address

    @contextmanager
    def _atomic(self) -> Iterator[None]:
        """Serialize and roll back jobs + balances on any exception."""
        with self._lock:
            jobs = copy.deepcopy(self._jobs)
            surplus = dict(self._surplus)
            balances = self.treasury.snapshot()
            try:
                yield
            except Exception:
                self._jobs = jobs
                self._surplus = surplus
                self.treasury.restore(balances)
                raise

    # --- views ---

    def get_details(self, job_id: int) -> JobDetails:
        """Pure read. Unknown ids return the zero value instead of failing."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job is not None else JobDetails.absent(job_id)

    def retained_surplus(self, job_id: Optional[int] = None) -> int:
        with self._lock:
            if job_id is not None:
                return self._surplus.get(job_id, 0)
            return sum(self._surplus.values())

    # --- preconditions (also used for dry runs) ---

    def check_post(self, job_id: int, usd_amount: int, funds_sent: int) -> int:
        """Return the required native amount or raise the revert the ledger would raise."""
        required = self.oracle.convert(usd_amount)
        if funds_sent < required:
            raise InsufficientFunds()
        if job_id in self._jobs:
            raise JobAlreadyExists()
        return required

    def check_complete(self, job_id: int, caller: str) -> JobDetails:
        job = self._jobs.get(job_id) or JobDetails.absent(job_id)
        if not job.exists or _addr(caller) != _addr(job.payer):
            raise Unauthorized()
        if job.is_completed:
            raise AlreadyCompleted()
        return job

    def check_cancel(self, job_id: int, caller: str) -> JobDetails:
        job = self._jobs.get(job_id) or JobDetails.absent(job_id)
        if not job.exists or _addr(caller) != _addr(job.payer):
            raise Unauthorized()
        if job.is_completed:
            raise AlreadyCompleted()
        if job.is_paid:
            raise AlreadyPaid()
        return job

    # --- transitions ---

    def post(
        self,
        job_id: int,
        payee: str,
        usd_amount: int,
        payer: str,
        funds_sent: int,
        sender: Optional[str] = None,
    ) -> int:
        """
        Record a job and take custody of ``funds_sent`` from ``sender`` (defaults to payer).

        nativeAmount is computed here, once, from the then-current price.
        Returns nativeAmount.
        """
        with self._atomic():
            required = self.check_post(job_id, usd_amount, funds_sent)
            self.treasury.transfer(sender or payer, self.address, funds_sent)
            excess = funds_sent - required
            if excess and self.excess_policy is ExcessPolicy.REFUND:
                self.treasury.pay_out(sender or payer, excess)
            elif excess:
                self._surplus[job_id] = self._surplus.get(job_id, 0) + excess
            self._jobs[job_id] = JobDetails(
                job_id=job_id,
                payer=_addr(payer),
                payee=_addr(payee),
                usd_amount=usd_amount,
                native_amount=required,
            )
        logger.info("Job %s posted: %s wei held for %s (excess %s, %s)", job_id, required, payee, excess, self.excess_policy.value)
        return required

    def complete(self, job_id: int, caller: str) -> JobDetails:
        """Release: fee to owner first, remainder to payee. All-or-nothing."""
        with self._atomic():
            job = self.check_complete(job_id, caller)
            job.is_completed = True
            fee = platform_fee(job.native_amount)
            self.treasury.pay_out(self.owner, fee)
            self.treasury.pay_out(job.payee, job.native_amount - fee)
            job.is_paid = True
            self._jobs[job_id] = job
        logger.info("Job %s completed: fee %s, payee %s", job_id, fee, job.native_amount - fee)
        return job.model_copy()

    def cancel(self, job_id: int, caller: str) -> int:
        """Delete the job and refund exactly nativeAmount to the payer. Returns the refund."""
        with self._atomic():
            job = self.check_cancel(job_id, caller)
            del self._jobs[job_id]
            self.treasury.pay_out(job.payer, job.native_amount)
        logger.info("Job %s cancelled: refunded %s to %s", job_id, job.native_amount, job.payer)
        return job.native_amount

    def sweep_surplus(self, caller: str) -> int:
        """Owner withdraws every retained excess. Returns the amount swept."""
        with self._atomic():
            if _addr(caller) != self.owner:
                raise Unauthorized("Only the owner can sweep surplus")
            total = sum(self._surplus.values())
            if total:
                self.treasury.pay_out(self.owner, total)
            self._surplus.clear()
        return total


__all__ = [
    "FEE_PERCENT",
    "LEDGER_ADDRESS",
    "ExcessPolicy",
    "JobLedger",
    "Treasury",
    "platform_fee",
    "ZERO_ADDRESS",
]
