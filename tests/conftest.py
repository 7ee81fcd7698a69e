"""Pytest configuration and fixtures."""

import time

import pytest

from escrowpay.backends import LOCAL_OWNER, LocalChain
from escrowpay.gateway import EscrowGateway
from escrowpay.ledger import JobLedger, Treasury
from escrowpay.mirror import InMemoryStatusStore
from escrowpay.oracle import PriceOracle, StaticPriceFeed
from escrowpay.orchestrator import TransactionOrchestrator
from escrowpay.reconciler import StatusReconciler
from escrowpay.wallet import GatewayWallet

ETH = 10**18
USD = 10**8

PAYER = "0x1000000000000000000000000000000000000001"
PAYEE = "0x2000000000000000000000000000000000000002"
STRANGER = "0x3000000000000000000000000000000000000003"
OWNER = LOCAL_OWNER

# 1000 USD at 3000 USD/ETH
NATIVE_1000_AT_3000 = 333333333333333333
FEE_1000_AT_3000 = 16666666666666666


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def feed():
    return StaticPriceFeed("3000")


@pytest.fixture
def oracle(feed):
    return PriceOracle(feed)


@pytest.fixture
def treasury():
    t = Treasury()
    t.mint(PAYER, 100 * ETH)
    return t


@pytest.fixture
def ledger(oracle, treasury):
    return JobLedger(oracle, owner=OWNER, treasury=treasury)


@pytest.fixture
def wallet():
    return GatewayWallet.generate()


@pytest.fixture
def chain(oracle, wallet):
    c = LocalChain(oracle, owner=OWNER)
    c.fund(wallet.address, 100 * ETH)
    return c


@pytest.fixture
def orchestrator(chain, wallet):
    o = TransactionOrchestrator(chain, wallet, write_timeout=5.0, read_timeout=2.0)
    yield o
    o.close()


@pytest.fixture
def store():
    return InMemoryStatusStore()


@pytest.fixture
def reconciler(store, orchestrator):
    return StatusReconciler(store, orchestrator)


@pytest.fixture
def gateway(orchestrator, reconciler):
    return EscrowGateway(orchestrator, reconciler)
