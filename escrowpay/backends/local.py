"""
In-process chain: mines escrow calls into a JobLedger.

Lets the gateway, reconciler and tests run without a node. Transactions are
mined immediately (auto_mine=True) or held in a mempool until mine() is
called, which is how tests exercise deadlines and stuck *_initiated records.
"""

import logging
import threading
from typing import Dict, List, Optional

from web3 import Web3

from escrowpay.backends.base import CANCEL, COMPLETE, POST, LedgerCall, Receipt
from escrowpay.errors import (
    EscrowError,
    LedgerRejection,
    PriceUnavailable,
    SubmissionError,
    TransactionTimeout,
    TransferFailed,
)
from escrowpay.ledger import ExcessPolicy, JobLedger, Treasury
from escrowpay.oracle import PriceOracle
from escrowpay.schema import JobDetails
from escrowpay.wallet import GatewayWallet

logger = logging.getLogger(__name__)

GAS_USED = {POST: 142_000, COMPLETE: 68_000, CANCEL: 41_000}
GAS_REVERTED = 24_000


class LocalChain:
    def __init__(
        self,
        oracle: PriceOracle,
        owner: str,
        excess_policy: ExcessPolicy = ExcessPolicy.RETAIN,
        auto_mine: bool = True,
    ):
        self.oracle = oracle
        self.treasury = Treasury()
        self.ledger = JobLedger(oracle, owner, treasury=self.treasury, excess_policy=excess_policy)
        self.auto_mine = auto_mine
        self.block_number = 0
        self._nonces: Dict[str, int] = {}
        self._mempool: List[tuple] = []
        self._receipts: Dict[str, Receipt] = {}
        self._cond = threading.Condition()

    # --- reads ---

    def get_details(self, job_id: int) -> JobDetails:
        return self.ledger.get_details(job_id)

    def balance_of(self, address: str) -> int:
        return self.treasury.balance_of(address)

    def fund(self, address: str, amount: int) -> None:
        self.treasury.mint(address, amount)

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._mempool)

    # --- writes ---

    def simulate(self, call: LedgerCall, sender: str) -> None:
        if call.op == POST:
            self.ledger.check_post(call.job_id, call.args["usd_amount"], call.value)
            if self.treasury.balance_of(sender) < call.value:
                raise SubmissionError(f"insufficient funds for value: {sender} has {self.treasury.balance_of(sender)}")
        elif call.op == COMPLETE:
            self.ledger.check_complete(call.job_id, sender)
        elif call.op == CANCEL:
            self.ledger.check_cancel(call.job_id, sender)
        else:
            raise SubmissionError(f"unknown ledger op {call.op!r}")

    def send(self, call: LedgerCall, wallet: GatewayWallet) -> str:
        if call.op not in GAS_USED:
            raise SubmissionError(f"unknown ledger op {call.op!r}")
        with self._cond:
            sender = wallet.address
            nonce = self._nonces.get(sender, 0)
            self._nonces[sender] = nonce + 1
            tx_hash = Web3.to_hex(Web3.keccak(text=f"{sender}:{nonce}:{call.op}:{call.job_id}:{call.value}"))
            self._mempool.append((tx_hash, call, sender))
        logger.debug("Broadcast %s for job %s: %s", call.op, call.job_id, tx_hash)
        if self.auto_mine:
            self.mine()
        return tx_hash

    def mine(self) -> List[Receipt]:
        """Mine every pending transaction, one block each, in submission order."""
        mined = []
        with self._cond:
            while self._mempool:
                tx_hash, call, sender = self._mempool.pop(0)
                self.block_number += 1
                receipt = self._execute(tx_hash, call, sender)
                self._receipts[tx_hash] = receipt
                mined.append(receipt)
            self._cond.notify_all()
        return mined

    def drop_pending(self) -> int:
        """Evict the mempool (a transaction that never lands). Returns how many were dropped."""
        with self._cond:
            dropped = len(self._mempool)
            self._mempool.clear()
        return dropped

    def _execute(self, tx_hash: str, call: LedgerCall, sender: str) -> Receipt:
        try:
            if call.op == POST:
                self.ledger.post(
                    call.job_id,
                    call.args["payee"],
                    call.args["usd_amount"],
                    call.args["payer"],
                    funds_sent=call.value,
                    sender=sender,
                )
            elif call.op == COMPLETE:
                self.ledger.complete(call.job_id, sender)
            else:
                self.ledger.cancel(call.job_id, sender)
        except LedgerRejection as e:
            return Receipt(tx_hash, self.block_number, GAS_REVERTED, 0, e.reason)
        except TransferFailed as e:
            return Receipt(tx_hash, self.block_number, GAS_REVERTED, 0, f"Transfer failed: {e}")
        except PriceUnavailable:
            return Receipt(tx_hash, self.block_number, GAS_REVERTED, 0, "Price feed unavailable")
        except EscrowError as e:
            return Receipt(tx_hash, self.block_number, GAS_REVERTED, 0, str(e))
        return Receipt(tx_hash, self.block_number, GAS_USED[call.op], 1)

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        with self._cond:
            return self._receipts.get(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        with self._cond:
            found = self._cond.wait_for(lambda: tx_hash in self._receipts, timeout=max(timeout, 0))
            if not found:
                raise TransactionTimeout(f"Transaction {tx_hash} not mined within {timeout:.1f}s", tx_hash=tx_hash)
            return self._receipts[tx_hash]
