"""
Gateway wallet: local keypair that signs every escrow transaction.

The key comes from PRIVATE_KEY (env or .env). Never read/write a key file.
In custodial mode the gateway wallet is also the payer of record, so it is
the only address allowed to complete or cancel the jobs it posts.
"""

import os
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from escrowpay.errors import ConfigError

ENV_PRIVATE_KEY = "PRIVATE_KEY"


def load_key(private_key: Optional[str] = None) -> LocalAccount:
    """
    Load the signing key from the argument or PRIVATE_KEY.
    Raises ConfigError if neither is set.
    """
    pk = (private_key or os.getenv(ENV_PRIVATE_KEY) or "").strip()
    if not pk:
        raise ConfigError(
            "Set PRIVATE_KEY in the environment (never commit it). "
            "Generate one: python -c \"from eth_account import Account; a = Account.create(); print(a.key.hex())\""
        )
    if pk.startswith("0x"):
        pk = pk[2:]
    return Account.from_key(pk)


class GatewayWallet:
    """Wallet for the escrow gateway. Key is loaded from PRIVATE_KEY unless an account is passed."""

    def __init__(self, account: Optional[LocalAccount] = None):
        if account is None:
            account = load_key()
        self._account = account

    @property
    def address(self) -> str:
        """Checksummed payer address (0x...)."""
        return self._account.address

    @property
    def account(self) -> LocalAccount:
        return self._account

    def sign_transaction(self, tx: dict) -> bytes:
        """Sign a transaction dict. Returns raw bytes ready for eth_sendRawTransaction."""
        signed = self._account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
        if not raw_tx:
            raise RuntimeError("Signed transaction missing raw_transaction (check web3/eth-account version)")
        return raw_tx

    def owns(self, address: str) -> bool:
        return Web3.to_checksum_address(address) == self.address

    @classmethod
    def from_key(cls, private_key: str) -> "GatewayWallet":
        """Create wallet from raw private key (hex string)."""
        return cls(account=load_key(private_key))

    @classmethod
    def generate(cls) -> "GatewayWallet":
        """New random keypair. Caller must persist it via env (never to file)."""
        return cls(account=Account.create())
