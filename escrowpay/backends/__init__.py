"""
Ledger backends: deployed contract (default) or in-process local chain.
"""

from escrowpay.backends.base import CANCEL, COMPLETE, POST, LedgerCall, LedgerClient, Receipt
from escrowpay.backends.local import LocalChain
from escrowpay.backends.web3_contract import Web3EscrowClient
from escrowpay.config import Settings
from escrowpay.oracle import PriceOracle, StaticPriceFeed
from escrowpay.wallet import GatewayWallet

# Platform fee recipient on the local chain
LOCAL_OWNER = "0x00000000000000000000000000000000000f33a5"
LOCAL_STARTING_BALANCE = 1_000 * 10**18


def get_backend(settings: Settings, wallet: GatewayWallet) -> LedgerClient:
    """
    Single entry point: returns a ledger client based on settings.backend.

    Args:
        settings: "web3" talks to CONTRACT_ADDRESS over ETHEREUM_RPC_URL;
            "local" mines into an in-process ledger priced at ESCROW_LOCAL_PRICE.
        wallet: gateway wallet (funded on the local chain).
    """
    if settings.backend == "local":
        chain = LocalChain(PriceOracle(StaticPriceFeed(settings.local_price)), owner=LOCAL_OWNER)
        chain.fund(wallet.address, LOCAL_STARTING_BALANCE)
        return chain
    return Web3EscrowClient.from_rpc(
        settings.rpc_url,
        settings.contract_address,
        settings.price_feed_address,
        settings.network_id,
        timeout=settings.write_timeout,
    )


__all__ = [
    "POST",
    "COMPLETE",
    "CANCEL",
    "LedgerCall",
    "LedgerClient",
    "Receipt",
    "LocalChain",
    "Web3EscrowClient",
    "get_backend",
]
