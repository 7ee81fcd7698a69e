"""
Transaction orchestrator: application intents -> ledger calls, under a deadline.

Writes (post/complete/cancel) are validated, priced, dry-run, signed,
broadcast, and then the calling thread blocks until the receipt arrives or
the deadline elapses. Failures before broadcast raise; anything observed
after broadcast comes back as a TransactionResult. A timeout, or a failed
receipt wait (ReceiptUnavailable), raises TransactionTimeout carrying the tx
hash: the transaction keeps going, so the outcome is unknown and must be
reconciled from ledger state, never blindly resubmitted.

Reads (job details, price) are idempotent and retried within their deadline.
Writes are never retried here.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from decimal import Decimal
from typing import Callable, Optional, TypeVar

from web3 import Web3

from escrowpay.backends.base import CANCEL, COMPLETE, POST, LedgerCall, LedgerClient, Receipt
from escrowpay.errors import (
    EscrowError,
    JobAlreadyExists,
    LedgerRejection,
    ReceiptUnavailable,
    TransactionTimeout,
    ValidationError,
    rejection_from_reason,
)
from escrowpay.oracle import MAX_USD_FIXED
from escrowpay.schema import MAX_JOB_ID, ZERO_ADDRESS, JobDetails, TransactionResult
from escrowpay.wallet import GatewayWallet

logger = logging.getLogger(__name__)

WRITE_TIMEOUT = 30.0
READ_TIMEOUT = 10.0
READ_ATTEMPTS = 3
READ_RETRY_DELAY = 0.5

T = TypeVar("T")


class Deadline:
    """Absolute deadline on the monotonic clock."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def validate_job_id(job_id: int) -> int:
    if not isinstance(job_id, int) or isinstance(job_id, bool) or not 0 <= job_id <= MAX_JOB_ID:
        raise ValidationError(f"Job id must be an unsigned 64-bit integer, got {job_id!r}")
    return job_id


def validate_address(address: str, role: str) -> str:
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValidationError(f"Invalid {role} address: {address!r}")
    checksummed = Web3.to_checksum_address(address)
    if checksummed.lower() == ZERO_ADDRESS:
        raise ValidationError(f"{role} address cannot be the zero address")
    return checksummed


class TransactionOrchestrator:
    def __init__(
        self,
        client: LedgerClient,
        wallet: GatewayWallet,
        write_timeout: float = WRITE_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
        price_buffer_bps: int = 0,
        read_workers: int = 8,
    ):
        self.client = client
        self.wallet = wallet
        self.write_timeout = write_timeout
        self.read_timeout = read_timeout
        self.price_buffer_bps = price_buffer_bps
        self._reads = ThreadPoolExecutor(max_workers=read_workers, thread_name_prefix="escrow-read")

    def close(self) -> None:
        self._reads.shutdown(wait=False)

    # --- reads ---

    def _read(self, fn: Callable[[], T], deadline: Deadline, what: str) -> T:
        """Run an idempotent read off-thread, retrying transient failures until the deadline."""
        last_error: Optional[Exception] = None
        for attempt in range(1, READ_ATTEMPTS + 1):
            if deadline.expired:
                break
            future = self._reads.submit(fn)
            try:
                return future.result(timeout=deadline.remaining())
            except FutureTimeout:
                future.cancel()
                raise TransactionTimeout(f"{what} did not finish within {deadline.seconds:.1f}s")
            except (LedgerRejection, ValidationError):
                raise
            except Exception as e:
                last_error = e
                logger.warning("%s failed (attempt %d/%d): %s", what, attempt, READ_ATTEMPTS, e)
                if attempt < READ_ATTEMPTS:
                    time.sleep(min(READ_RETRY_DELAY * attempt, deadline.remaining()))
        if last_error is not None:
            raise last_error
        raise TransactionTimeout(f"{what} did not finish within {deadline.seconds:.1f}s")

    def get_job_details(self, job_id: int, timeout: Optional[float] = None) -> JobDetails:
        """Ledger view. Unknown ids return JobDetails with exists == False."""
        validate_job_id(job_id)
        deadline = Deadline(timeout if timeout is not None else self.read_timeout)
        return self._read(lambda: self.client.get_details(job_id), deadline, f"getJobDetails({job_id})")

    def get_eth_usd_price(self, timeout: Optional[float] = None) -> Decimal:
        deadline = Deadline(timeout if timeout is not None else self.read_timeout)
        return self._read(self.client.oracle.usd_price, deadline, "ETH/USD price")

    def quote(self, usd_amount: int, timeout: Optional[float] = None) -> int:
        """Wei the ledger would require for usd_amount at the current price."""
        deadline = Deadline(timeout if timeout is not None else self.read_timeout)
        return self._read(lambda: self.client.oracle.convert(usd_amount), deadline, "USD conversion")

    # --- writes ---

    def post_job(
        self,
        job_id: int,
        payee: str,
        usd_amount: int,
        payer: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> TransactionResult:
        """Fund escrow for job_id. Sends the converted amount plus ESCROW_PRICE_BUFFER_BPS."""
        validate_job_id(job_id)
        payee = validate_address(payee, "payee")
        payer = validate_address(payer or self.wallet.address, "payer")
        if not isinstance(usd_amount, int) or not 0 < usd_amount <= MAX_USD_FIXED:
            raise ValidationError(f"USD amount must be a positive fixed-point integer <= {MAX_USD_FIXED}, got {usd_amount!r}")
        deadline = Deadline(timeout if timeout is not None else self.write_timeout)

        existing = self._read(lambda: self.client.get_details(job_id), deadline, f"getJobDetails({job_id})")
        if existing.exists:
            raise JobAlreadyExists()
        required = self._read(lambda: self.client.oracle.convert(usd_amount), deadline, "USD conversion")
        value = required + required * self.price_buffer_bps // 10_000
        call = LedgerCall(POST, job_id, {"payee": payee, "usd_amount": usd_amount, "payer": payer}, value=value)
        return self._submit(call, deadline)

    def complete_job(self, job_id: int, timeout: Optional[float] = None) -> TransactionResult:
        """Release escrow: fee to platform, remainder to payee."""
        validate_job_id(job_id)
        deadline = Deadline(timeout if timeout is not None else self.write_timeout)
        return self._submit(LedgerCall(COMPLETE, job_id), deadline)

    def cancel_job(self, job_id: int, timeout: Optional[float] = None) -> TransactionResult:
        """Refund escrow to the payer and delete the job."""
        validate_job_id(job_id)
        deadline = Deadline(timeout if timeout is not None else self.write_timeout)
        return self._submit(LedgerCall(CANCEL, job_id), deadline)

    def _submit(self, call: LedgerCall, deadline: Deadline) -> TransactionResult:
        self.client.simulate(call, self.wallet.address)
        if deadline.expired:
            raise TransactionTimeout(f"Deadline elapsed before {call.op} for job {call.job_id} was broadcast")
        tx_hash = self.client.send(call, self.wallet)
        logger.info("Broadcast %s for job %s: %s (value=%s)", call.op, call.job_id, tx_hash, call.value)
        try:
            receipt = self.client.wait_for_receipt(tx_hash, deadline.remaining())
        except TransactionTimeout:
            logger.warning("Timed out waiting for %s of job %s (%s); outcome unknown", call.op, call.job_id, tx_hash)
            raise
        except Exception as e:
            logger.warning("Receipt wait for %s of job %s (%s) failed; outcome unknown: %s", call.op, call.job_id, tx_hash, e)
            raise ReceiptUnavailable(f"Receipt for {tx_hash} unavailable: {e}", tx_hash=tx_hash) from e
        result = self._to_result(receipt)
        if result.success:
            logger.info("%s for job %s confirmed in block %s (gas %s)", call.op, call.job_id, result.block_number, result.gas_used)
        else:
            logger.warning("%s for job %s reverted in block %s: %s", call.op, call.job_id, result.block_number, result.error)
        return result

    @staticmethod
    def _to_result(receipt: Receipt) -> TransactionResult:
        result = TransactionResult(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
            success=receipt.success,
        )
        if not receipt.success:
            if receipt.revert_reason:
                rejection = rejection_from_reason(receipt.revert_reason)
                result.error = rejection.reason
                result.error_code = type(rejection).__name__
            else:
                result.error = "transaction reverted"
                result.error_code = EscrowError.__name__
        return result
