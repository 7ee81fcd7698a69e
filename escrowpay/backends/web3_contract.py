"""
Deployed escrow contract over JSON-RPC. Gateway wallet signs and broadcasts;
receipts are awaited with web3's own receipt wait, bounded by the caller's deadline.
"""

import logging
import threading
from typing import Optional

from eth_abi import decode
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from escrowpay.backends.base import CANCEL, COMPLETE, POST, LedgerCall, Receipt
from escrowpay.errors import ReceiptUnavailable, SubmissionError, TransactionTimeout, rejection_from_reason
from escrowpay.oracle import ChainlinkPriceFeed, PriceOracle
from escrowpay.schema import JobDetails
from escrowpay.wallet import GatewayWallet

logger = logging.getLogger(__name__)

# Error(string) selector
ERROR_STRING_SELECTOR = "0x08c379a0"
RECEIPT_POLL_LATENCY = 1.0

GAS_LIMITS = {POST: 300_000, COMPLETE: 200_000, CANCEL: 150_000}

ESCROW_ABI = [
    {
        "inputs": [
            {"internalType": "uint64", "name": "jobId", "type": "uint64"},
            {"internalType": "address", "name": "freelancer", "type": "address"},
            {"internalType": "uint256", "name": "usdAmount", "type": "uint256"},
            {"internalType": "address", "name": "client", "type": "address"},
        ],
        "name": "postJob",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint64", "name": "jobId", "type": "uint64"}],
        "name": "markJobCompleted",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint64", "name": "jobId", "type": "uint64"}],
        "name": "cancelJob",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint64", "name": "jobId", "type": "uint64"}],
        "name": "getJobDetails",
        "outputs": [
            {"internalType": "address", "name": "client", "type": "address"},
            {"internalType": "address", "name": "freelancer", "type": "address"},
            {"internalType": "uint256", "name": "usdAmount", "type": "uint256"},
            {"internalType": "uint256", "name": "ethAmount", "type": "uint256"},
            {"internalType": "bool", "name": "isCompleted", "type": "bool"},
            {"internalType": "bool", "name": "isPaid", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


def decode_revert_data(data) -> Optional[str]:
    """Decode Error(string) revert data (hex str or bytes). None if not an Error(string) payload."""
    if isinstance(data, (bytes, bytearray)):
        data = Web3.to_hex(data)
    if not isinstance(data, str) or not data.startswith(ERROR_STRING_SELECTOR):
        return None
    try:
        (reason,) = decode(["string"], bytes.fromhex(data[len(ERROR_STRING_SELECTOR):]))
    except Exception:
        return None
    return reason


def _revert_message(err: ContractLogicError) -> str:
    decoded = decode_revert_data(getattr(err, "data", None))
    if decoded:
        return decoded
    return getattr(err, "message", None) or str(err)


class Web3EscrowClient:
    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        oracle: PriceOracle,
        chain_id: int,
    ):
        self.w3 = w3
        self.oracle = oracle
        self.chain_id = chain_id
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=ESCROW_ABI)
        # eth_getTransactionCount("pending") + send must not interleave for one wallet
        self._send_lock = threading.Lock()

    @classmethod
    def from_rpc(cls, rpc_url: str, contract_address: str, price_feed_address: str, chain_id: int, timeout: float = 30) -> "Web3EscrowClient":
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        oracle = PriceOracle(ChainlinkPriceFeed(w3, price_feed_address))
        return cls(w3, contract_address, oracle, chain_id)

    def _function(self, call: LedgerCall):
        fns = self.contract.functions
        if call.op == POST:
            return fns.postJob(
                call.job_id,
                Web3.to_checksum_address(call.args["payee"]),
                call.args["usd_amount"],
                Web3.to_checksum_address(call.args["payer"]),
            )
        if call.op == COMPLETE:
            return fns.markJobCompleted(call.job_id)
        if call.op == CANCEL:
            return fns.cancelJob(call.job_id)
        raise SubmissionError(f"unknown ledger op {call.op!r}")

    def get_details(self, job_id: int) -> JobDetails:
        client, freelancer, usd_amount, eth_amount, is_completed, is_paid = (
            self.contract.functions.getJobDetails(job_id).call()
        )
        return JobDetails(
            job_id=job_id,
            payer=client,
            payee=freelancer,
            usd_amount=usd_amount,
            native_amount=eth_amount,
            is_completed=is_completed,
            is_paid=is_paid,
        )

    def simulate(self, call: LedgerCall, sender: str) -> None:
        try:
            self._function(call).call({"from": sender, "value": call.value, "gas": GAS_LIMITS[call.op]})
        except ContractLogicError as e:
            raise rejection_from_reason(_revert_message(e)) from e
        except SubmissionError:
            raise
        except Exception as e:
            raise SubmissionError(f"Dry run of {call.op} failed: {e}") from e

    def send(self, call: LedgerCall, wallet: GatewayWallet) -> str:
        try:
            with self._send_lock:
                tx = self._function(call).build_transaction(
                    {
                        "from": wallet.address,
                        "chainId": self.chain_id,
                        "gas": GAS_LIMITS[call.op],
                        "value": call.value,
                        "nonce": self.w3.eth.get_transaction_count(wallet.address, "pending"),
                    }
                )
                tx_hash = self.w3.eth.send_raw_transaction(wallet.sign_transaction(tx))
        except SubmissionError:
            raise
        except Exception as e:
            raise SubmissionError(f"Failed to submit {call.op} for job {call.job_id}: {e}") from e
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=max(timeout, 0), poll_latency=RECEIPT_POLL_LATENCY
            )
        except TimeExhausted as e:
            raise TransactionTimeout(f"Transaction {tx_hash} not mined within {timeout:.1f}s", tx_hash=tx_hash) from e
        except Exception as e:
            raise ReceiptUnavailable(f"Receipt for {tx_hash} unavailable: {e}", tx_hash=tx_hash) from e
        status = int(receipt["status"])
        reason = None if status == 1 else self._replay_revert_reason(tx_hash, receipt["blockNumber"])
        return Receipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            status=status,
            revert_reason=reason,
        )

    def _replay_revert_reason(self, tx_hash: str, block_number: int) -> Optional[str]:
        """Re-run a reverted tx as eth_call at its parent block to recover the reason."""
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
            self.w3.eth.call(
                {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx["value"], "gas": tx["gas"]},
                block_number - 1,
            )
        except ContractLogicError as e:
            return _revert_message(e)
        except Exception as e:
            logger.warning("Could not replay reverted tx %s: %s", tx_hash, e)
        return None
