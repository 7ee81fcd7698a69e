"""
Price oracle adapter: USD -> native asset (wei) at the latest feed price.

Every conversion re-reads the feed. The price can move between two calls;
the ledger re-reads it at post time, so the amount the gateway sends and the
amount the ledger requires may differ slightly (accepted risk, see
ESCROW_PRICE_BUFFER_BPS).

Fixed-point conventions:
  - USD amounts carry USD_DECIMALS (8, same scale as Chainlink USD feeds).
  - Native amounts are wei (NATIVE_DECIMALS = 18).
"""

from decimal import Decimal, InvalidOperation
from typing import Protocol, Tuple, Union

from web3 import Web3

from escrowpay.errors import PriceUnavailable, ValidationError

NATIVE_DECIMALS = 18
USD_DECIMALS = 8
# Largest fixed-point USD amount the status mirror can store (signed 64-bit column)
MAX_USD_FIXED = 2**63 - 1

# AggregatorV3Interface subset
AGGREGATOR_V3_ABI = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"internalType": "uint80", "name": "roundId", "type": "uint80"},
            {"internalType": "int256", "name": "answer", "type": "int256"},
            {"internalType": "uint256", "name": "startedAt", "type": "uint256"},
            {"internalType": "uint256", "name": "updatedAt", "type": "uint256"},
            {"internalType": "uint80", "name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


def usd_to_fixed(amount: Union[str, int, Decimal]) -> int:
    """'1000' or Decimal('12.50') -> fixed-point USD. Rejects non-positive and sub-unit precision."""
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise ValidationError(f"Invalid USD amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"USD amount must be positive, got {amount!r}")
    scaled = value * (10**USD_DECIMALS)
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"USD amount has more than {USD_DECIMALS} decimal places: {amount!r}")
    if scaled > MAX_USD_FIXED:
        raise ValidationError(f"USD amount too large: {amount!r} (max {fixed_to_usd(MAX_USD_FIXED)})")
    return int(scaled)


def fixed_to_usd(amount: int) -> Decimal:
    return Decimal(amount) / (10**USD_DECIMALS)


def wei_to_eth(amount: int) -> Decimal:
    return Decimal(amount) / (10**NATIVE_DECIMALS)


class PriceFeed(Protocol):
    def latest_price(self) -> Tuple[int, int]:
        """Return (price, decimals) of the latest round. May raise on RPC failure."""
        ...


class ChainlinkPriceFeed:
    """ETH/USD from a Chainlink aggregator contract over JSON-RPC."""

    def __init__(self, w3: Web3, address: str):
        self._contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=AGGREGATOR_V3_ABI)
        self._decimals = None

    def latest_price(self) -> Tuple[int, int]:
        if self._decimals is None:
            self._decimals = int(self._contract.functions.decimals().call())
        _, answer, _, _, _ = self._contract.functions.latestRoundData().call()
        return int(answer), self._decimals


class StaticPriceFeed:
    """Fixed price for the local backend and tests. set_price() simulates market moves."""

    def __init__(self, usd_price: Union[str, int, Decimal], decimals: int = USD_DECIMALS):
        self.decimals = decimals
        self.set_price(usd_price)

    def set_price(self, usd_price: Union[str, int, Decimal]) -> None:
        self.answer = int(Decimal(str(usd_price)) * (10**self.decimals))

    def latest_price(self) -> Tuple[int, int]:
        return self.answer, self.decimals


class PriceOracle:
    def __init__(self, feed: PriceFeed):
        self.feed = feed

    def price(self) -> int:
        """Latest ETH/USD price rescaled to USD_DECIMALS. Raises PriceUnavailable."""
        try:
            answer, decimals = self.feed.latest_price()
        except Exception as e:
            raise PriceUnavailable(f"Price feed read failed: {e}") from e
        if answer <= 0:
            raise PriceUnavailable(f"Price feed returned non-positive price: {answer}")
        if decimals >= USD_DECIMALS:
            scaled = answer // 10 ** (decimals - USD_DECIMALS)
        else:
            scaled = answer * 10 ** (USD_DECIMALS - decimals)
        if scaled <= 0:
            raise PriceUnavailable(f"Price {answer} (decimals={decimals}) rounds to zero")
        return scaled

    def usd_price(self) -> Decimal:
        return fixed_to_usd(self.price())

    def convert(self, usd_amount: int) -> int:
        """nativeAmount = usdAmount * 10**18 / price (integer division)."""
        if usd_amount <= 0:
            raise ValidationError(f"USD amount must be positive, got {usd_amount}")
        return usd_amount * 10**NATIVE_DECIMALS // self.price()
