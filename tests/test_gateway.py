"""Tests for EscrowGateway: intents, status preconditions and mirror following."""

import logging
from decimal import Decimal

import pytest

from escrowpay.config import Settings
from escrowpay.errors import (
    AlreadyCompleted,
    JobAlreadyExists,
    MirrorError,
    MirrorRecordNotFound,
    ReceiptUnavailable,
    TransactionTimeout,
    Unauthorized,
    ValidationError,
)
from escrowpay.gateway import EscrowGateway, build_gateway
from escrowpay.mirror import InMemoryStatusStore
from escrowpay.reconciler import StatusReconciler
from escrowpay.schema import PaymentStatus as S
from escrowpay.schema import PostJobRequest, Stage

from conftest import FEE_1000_AT_3000, NATIVE_1000_AT_3000, OWNER, PAYEE, STRANGER, USD


class BrokenStore(InMemoryStatusStore):
    """Mirror whose status updates always fail."""

    def compare_and_set_status(self, *args, **kwargs):
        raise MirrorError("database is down")


def drop_connection(tx_hash, timeout):
    raise ConnectionError("connection reset by peer")


class TestPostJob:
    def test_funds_escrow_and_mirrors_deposit(self, gateway, chain, store):
        result = gateway.post_job(42, PAYEE, "1000")

        assert result.success
        record = store.get(42)
        assert record.payment_status == S.DEPOSITED
        assert record.tx_hash_deposit == result.tx_hash
        assert record.usd_amount == 1000 * USD
        assert chain.get_details(42).native_amount == NATIVE_1000_AT_3000

    def test_from_request_body(self, gateway, wallet, store):
        req = PostJobRequest(job_id=3, payee_address=PAYEE, usd_amount="12.50", payer_address=wallet.address)
        assert gateway.post_job_request(req).success
        assert store.get(3).usd_amount == 1250000000

    def test_payer_must_be_gateway_wallet(self, gateway, chain):
        with pytest.raises(ValidationError, match="mismatch"):
            gateway.post_job(42, PAYEE, "1000", payer=STRANGER)
        assert chain.block_number == 0

    @pytest.mark.parametrize("amount", ["0", "-1", "ten", "0.000000001", "100000000000"])
    def test_bad_amount(self, gateway, store, amount):
        with pytest.raises(ValidationError):
            gateway.post_job(42, PAYEE, amount)
        assert store.get(42) is None

    def test_duplicate(self, gateway, store):
        first = gateway.post_job(7, PAYEE, "1000")
        with pytest.raises(JobAlreadyExists):
            gateway.post_job(7, PAYEE, "5")
        assert store.get(7).tx_hash_deposit == first.tx_hash

    def test_mirror_failure_never_undoes_ledger_write(self, orchestrator, chain, caplog):
        gateway = EscrowGateway(orchestrator, StatusReconciler(BrokenStore(), orchestrator))

        with caplog.at_level(logging.WARNING, logger="escrowpay.gateway"):
            result = gateway.post_job(42, PAYEE, "1000")

        assert result.success
        assert chain.get_details(42).exists
        assert "Failed to update payment status" in caplog.text

    def test_timeout_records_attempt_for_reconciler(self, gateway, chain, store):
        gateway.orchestrator.write_timeout = 0.1
        chain.auto_mine = False

        with pytest.raises(TransactionTimeout) as exc_info:
            gateway.post_job(42, PAYEE, "1000")

        record = store.get(42)
        assert record.payment_status == S.DEPOSIT_INITIATED
        assert record.tx_hash_deposit == exc_info.value.tx_hash

        chain.mine()
        gateway.reconciler.tick()
        assert store.get(42).payment_status == S.DEPOSITED

    def test_receipt_failure_records_attempt_for_reconciler(self, gateway, chain, store, monkeypatch):
        monkeypatch.setattr(chain, "wait_for_receipt", drop_connection)

        with pytest.raises(ReceiptUnavailable) as exc_info:
            gateway.post_job(42, PAYEE, "1000")

        assert exc_info.value.tx_hash.startswith("0x")
        record = store.get(42)
        assert record.payment_status == S.DEPOSIT_INITIATED
        assert record.tx_hash_deposit == exc_info.value.tx_hash

        gateway.reconciler.tick()
        assert store.get(42).payment_status == S.DEPOSITED

    def test_receipt_failure_on_release_keeps_hash(self, gateway, chain, store, monkeypatch):
        gateway.post_job(42, PAYEE, "1000")
        monkeypatch.setattr(chain, "wait_for_receipt", drop_connection)

        with pytest.raises(ReceiptUnavailable) as exc_info:
            gateway.complete_job(42)

        record = store.get(42)
        assert record.payment_status == S.RELEASE_INITIATED
        assert record.tx_hash_release == exc_info.value.tx_hash


class TestCompleteAndCancel:
    def test_complete_releases_and_mirrors(self, gateway, chain, store):
        gateway.post_job(42, PAYEE, "1000")
        result = gateway.complete_job(42)

        assert result.success
        record = store.get(42)
        assert record.payment_status == S.RELEASED
        assert record.tx_hash_release == result.tx_hash
        assert chain.balance_of(OWNER) == FEE_1000_AT_3000

    def test_cancel_refunds_and_mirrors(self, gateway, chain, store):
        gateway.post_job(42, PAYEE, "1000")
        result = gateway.cancel_job(42)

        assert result.success
        assert store.get(42).payment_status == S.REFUNDED
        assert store.get(42).tx_hash_refund == result.tx_hash
        assert not chain.get_details(42).exists

    def test_requires_deposited_status(self, gateway, store):
        gateway.post_job(42, PAYEE, "1000")
        gateway.complete_job(42)

        with pytest.raises(ValidationError, match="expected 'deposited'"):
            gateway.cancel_job(42)
        with pytest.raises(ValidationError, match="'released'"):
            gateway.complete_job(42)

    def test_pending_release_blocks_resubmission(self, gateway, chain, store):
        gateway.post_job(42, PAYEE, "1000")
        gateway.orchestrator.write_timeout = 0.1
        chain.auto_mine = False
        with pytest.raises(TransactionTimeout):
            gateway.complete_job(42)

        with pytest.raises(ValidationError):
            gateway.complete_job(42)
        assert chain.pending == 1

    def test_unmirrored_job_adopted_from_ledger(self, gateway, chain, wallet, store):
        chain.ledger.post(42, PAYEE, 1000 * USD, wallet.address, funds_sent=NATIVE_1000_AT_3000)

        gateway.complete_job(42)

        record = store.get(42)
        assert record.payment_status == S.RELEASED
        assert record.usd_amount == 1000 * USD

    def test_unknown_job_left_to_ledger(self, gateway, store):
        with pytest.raises(Unauthorized):
            gateway.complete_job(5)
        assert store.get(5) is None

    def test_cancel_after_completion_without_mirror(self, gateway, chain, wallet):
        chain.ledger.post(9, PAYEE, 1000 * USD, wallet.address, funds_sent=NATIVE_1000_AT_3000)
        chain.ledger.complete(9, wallet.address)
        with pytest.raises(AlreadyCompleted):
            gateway.cancel_job(9)


class TestReads:
    def test_job_status(self, gateway):
        gateway.post_job(42, PAYEE, "1000")
        status = gateway.job_status(42)

        assert status.payment_status == S.DEPOSITED
        assert status.usd_amount == "1000"
        assert status.as_of >= status.updated_at

    def test_job_status_unknown(self, gateway):
        with pytest.raises(MirrorRecordNotFound):
            gateway.job_status(1)

    def test_confirm_verifies_against_ledger(self, gateway, reconciler):
        reconciler.record_attempt(11, Stage.DEPOSIT, "0x11", 1000 * USD)

        status = gateway.confirm(11, Stage.DEPOSIT)

        assert status.payment_status == S.DEPOSIT_INITIATED
        assert status.divergence

    def test_eth_price(self, gateway):
        assert gateway.eth_price() == Decimal("3000")


class TestBuildGateway:
    def test_local_backend_end_to_end(self):
        settings = Settings(backend="local", database_url="sqlite:///:memory:", reconcile_grace=0)
        gateway = build_gateway(settings, store=InMemoryStatusStore())
        try:
            assert gateway.post_job(1, PAYEE, "250").success
            assert gateway.complete_job(1).success
            assert gateway.job_status(1).payment_status == S.RELEASED
        finally:
            gateway.close()

    def test_sql_store_from_settings(self):
        settings = Settings(backend="local", database_url="sqlite:///:memory:")
        gateway = build_gateway(settings)
        try:
            gateway.post_job(2, PAYEE, "10")
            assert gateway.job_status(2).payment_status == S.DEPOSITED
        finally:
            gateway.close()
