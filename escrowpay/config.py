"""
Gateway configuration from the environment (or a .env file in the working directory).

Core variables: ETHEREUM_RPC_URL, CONTRACT_ADDRESS,
PRIVATE_KEY, DATABASE_URL, SERVER_PORT, NETWORK_ID. Escrow-specific knobs use the
ESCROW_ prefix.
"""

import os
from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from escrowpay.errors import ConfigError

PLACEHOLDER_RPC_URL = "https://sepolia.infura.io/v3/YOUR_INFURA_KEY"
SEPOLIA_CHAIN_ID = 11155111
# Chainlink ETH/USD aggregator on Sepolia (8 decimals)
SEPOLIA_ETH_USD_FEED = "0x694AA1769357215DE4FAC081bf1f309aDC325306"


def load_env(env_file: Optional[Path] = None) -> None:
    """Load .env without overriding variables already exported."""
    if env_file is not None:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(Path.cwd() / ".env", override=False)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    if not raw.isdigit():
        raise ConfigError(f"{name} must be a non-negative integer, got {raw!r}")
    return int(raw)


class Settings(BaseModel):
    rpc_url: str = PLACEHOLDER_RPC_URL
    contract_address: str = ""
    private_key: str = Field("", repr=False)
    database_url: str = "sqlite:///escrowpay.db"
    server_port: int = 8080
    network_id: int = SEPOLIA_CHAIN_ID
    price_feed_address: str = SEPOLIA_ETH_USD_FEED
    backend: str = Field("web3", description="'web3' (deployed contract) or 'local' (in-process chain)")
    write_timeout: float = 30.0
    read_timeout: float = 10.0
    reconcile_interval: float = 30.0
    reconcile_grace: float = 120.0
    price_buffer_bps: int = 0
    local_price: Decimal = Decimal("3000")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        load_env(env_file)
        return cls(
            rpc_url=os.getenv("ETHEREUM_RPC_URL", PLACEHOLDER_RPC_URL).strip(),
            contract_address=os.getenv("CONTRACT_ADDRESS", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", "").strip(),
            database_url=os.getenv("DATABASE_URL", "sqlite:///escrowpay.db").strip(),
            server_port=_env_int("SERVER_PORT", 8080),
            network_id=_env_int("NETWORK_ID", SEPOLIA_CHAIN_ID),
            price_feed_address=os.getenv("PRICE_FEED_ADDRESS", SEPOLIA_ETH_USD_FEED).strip(),
            backend=os.getenv("ESCROW_BACKEND", "web3").strip().lower(),
            write_timeout=_env_float("ESCROW_WRITE_TIMEOUT", 30.0),
            read_timeout=_env_float("ESCROW_READ_TIMEOUT", 10.0),
            reconcile_interval=_env_float("ESCROW_RECONCILE_INTERVAL", 30.0),
            reconcile_grace=_env_float("ESCROW_RECONCILE_GRACE", 120.0),
            price_buffer_bps=_env_int("ESCROW_PRICE_BUFFER_BPS", 0),
            local_price=Decimal(os.getenv("ESCROW_LOCAL_PRICE", "3000").strip() or "3000"),
            log_level=os.getenv("ESCROW_LOG_LEVEL", "INFO").strip().upper(),
        )

    def validate_for_backend(self) -> None:
        """Start-up checks. The local backend only needs a database URL."""
        if self.backend not in ("web3", "local"):
            raise ConfigError(f"ESCROW_BACKEND must be 'web3' or 'local', got {self.backend!r}")
        if not self.database_url:
            raise ConfigError("DATABASE_URL environment variable is required")
        if self.backend == "local":
            return
        if not self.contract_address:
            raise ConfigError("CONTRACT_ADDRESS environment variable is required")
        if not self.private_key:
            raise ConfigError("PRIVATE_KEY environment variable is required")
        if not self.rpc_url or self.rpc_url == PLACEHOLDER_RPC_URL:
            raise ConfigError("Please set a valid ETHEREUM_RPC_URL")
