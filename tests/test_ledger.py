"""Tests for the job ledger state machine and fund custody."""

import threading

import pytest

from escrowpay.errors import (
    AlreadyCompleted,
    AlreadyPaid,
    InsufficientFunds,
    JobAlreadyExists,
    PriceUnavailable,
    TransferFailed,
    Unauthorized,
)
from escrowpay.ledger import ExcessPolicy, JobLedger, Treasury, platform_fee

from conftest import ETH, FEE_1000_AT_3000, NATIVE_1000_AT_3000, OWNER, PAYEE, PAYER, STRANGER, USD


def post(ledger, job_id=42, usd=1000 * USD, funds=NATIVE_1000_AT_3000, payer=PAYER):
    return ledger.post(job_id, PAYEE, usd, payer, funds_sent=funds)


class TestPost:
    def test_records_job_and_takes_custody(self, ledger, treasury):
        native = post(ledger)

        details = ledger.get_details(42)
        assert native == NATIVE_1000_AT_3000
        assert details.exists
        assert details.payer == PAYER
        assert details.payee == PAYEE
        assert details.usd_amount == 1000 * USD
        assert details.native_amount == NATIVE_1000_AT_3000
        assert not details.is_completed and not details.is_paid
        assert treasury.held == NATIVE_1000_AT_3000
        assert treasury.balance_of(PAYER) == 100 * ETH - NATIVE_1000_AT_3000

    def test_duplicate_job_rejected_and_first_untouched(self, ledger, treasury):
        post(ledger, job_id=7)
        before = ledger.get_details(7)
        held = treasury.held

        with pytest.raises(JobAlreadyExists, match="Job already exists"):
            post(ledger, job_id=7)

        assert ledger.get_details(7) == before
        assert treasury.held == held

    def test_insufficient_funds(self, ledger, treasury):
        with pytest.raises(InsufficientFunds):
            post(ledger, funds=NATIVE_1000_AT_3000 - 1)
        assert not ledger.get_details(42).exists
        assert treasury.held == 0

    def test_price_moves_against_sender_between_quote_and_post(self, ledger, feed):
        quoted = ledger.oracle.convert(1000 * USD)
        feed.set_price("2990")
        with pytest.raises(InsufficientFunds):
            post(ledger, funds=quoted)

    def test_price_unavailable_leaves_no_job(self, ledger, feed):
        feed.answer = 0
        with pytest.raises(PriceUnavailable):
            post(ledger)
        assert not ledger.get_details(42).exists

    def test_excess_retained_by_default(self, ledger, treasury):
        post(ledger, funds=NATIVE_1000_AT_3000 + 1000)

        assert ledger.get_details(42).native_amount == NATIVE_1000_AT_3000
        assert ledger.retained_surplus(42) == 1000
        assert treasury.held == NATIVE_1000_AT_3000 + 1000

    def test_excess_refunded_when_configured(self, oracle, treasury):
        ledger = JobLedger(oracle, owner=OWNER, treasury=treasury, excess_policy=ExcessPolicy.REFUND)
        post(ledger, funds=NATIVE_1000_AT_3000 + 1000)

        assert ledger.retained_surplus() == 0
        assert treasury.held == NATIVE_1000_AT_3000
        assert treasury.balance_of(PAYER) == 100 * ETH - NATIVE_1000_AT_3000

    def test_sender_short_on_balance_is_transfer_failure(self, ledger):
        with pytest.raises(TransferFailed):
            ledger.post(1, PAYEE, 1000 * USD, STRANGER, funds_sent=NATIVE_1000_AT_3000)
        assert not ledger.get_details(1).exists


class TestComplete:
    def test_pays_fee_then_payee(self, ledger, treasury):
        post(ledger)
        job = ledger.complete(42, PAYER)

        assert job.is_completed and job.is_paid
        assert treasury.balance_of(OWNER) == FEE_1000_AT_3000
        assert treasury.balance_of(PAYEE) == NATIVE_1000_AT_3000 - FEE_1000_AT_3000
        assert treasury.held == 0

    def test_fee_is_five_percent_floored(self):
        assert platform_fee(NATIVE_1000_AT_3000) == FEE_1000_AT_3000
        assert platform_fee(19) == 0
        assert platform_fee(20) == 1

    def test_only_payer(self, ledger, treasury):
        post(ledger, job_id=5)
        with pytest.raises(Unauthorized, match="Only the payer"):
            ledger.complete(5, STRANGER)
        assert not ledger.get_details(5).is_completed
        assert treasury.balance_of(PAYEE) == 0

    def test_unknown_job_is_unauthorized(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.complete(404, PAYER)

    def test_twice(self, ledger):
        post(ledger)
        ledger.complete(42, PAYER)
        with pytest.raises(AlreadyCompleted):
            ledger.complete(42, PAYER)

    def test_transfer_failure_rolls_back_everything(self, ledger, treasury):
        post(ledger)
        treasury.rejecting.add(PAYEE)

        with pytest.raises(TransferFailed):
            ledger.complete(42, PAYER)

        details = ledger.get_details(42)
        assert not details.is_completed and not details.is_paid
        assert treasury.balance_of(OWNER) == 0
        assert treasury.held == NATIVE_1000_AT_3000

        treasury.rejecting.clear()
        assert ledger.complete(42, PAYER).is_paid

    def test_concurrent_completes_pay_once(self, ledger, treasury):
        post(ledger)
        outcomes = []

        def complete():
            try:
                ledger.complete(42, PAYER)
                outcomes.append("ok")
            except AlreadyCompleted:
                outcomes.append("already")

        threads = [threading.Thread(target=complete) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["already"] * 7 + ["ok"]
        assert treasury.balance_of(PAYEE) == NATIVE_1000_AT_3000 - FEE_1000_AT_3000


class TestCancel:
    def test_refunds_native_amount_and_deletes(self, ledger, treasury):
        post(ledger)
        refund = ledger.cancel(42, PAYER)

        assert refund == NATIVE_1000_AT_3000
        assert not ledger.get_details(42).exists
        assert treasury.balance_of(PAYER) == 100 * ETH
        assert treasury.held == 0

    def test_refund_ignores_price_changes(self, ledger, feed):
        post(ledger)
        feed.set_price("1")
        assert ledger.cancel(42, PAYER) == NATIVE_1000_AT_3000

    def test_surplus_stays_with_ledger(self, ledger, treasury):
        post(ledger, funds=NATIVE_1000_AT_3000 + 500)
        ledger.cancel(42, PAYER)
        assert treasury.held == 500
        assert ledger.retained_surplus() == 500

    def test_after_completion(self, ledger, treasury):
        post(ledger, job_id=9)
        ledger.complete(9, PAYER)
        paid = treasury.balance_of(PAYEE)

        with pytest.raises(AlreadyCompleted):
            ledger.cancel(9, PAYER)
        assert treasury.balance_of(PAYEE) == paid
        assert ledger.get_details(9).is_paid

    def test_only_payer(self, ledger):
        post(ledger)
        with pytest.raises(Unauthorized):
            ledger.cancel(42, STRANGER)
        assert ledger.get_details(42).exists

    def test_paid_flag_guards_cancel(self, ledger):
        post(ledger)
        ledger._jobs[42].is_paid = True
        with pytest.raises(AlreadyPaid):
            ledger.cancel(42, PAYER)

    def test_refund_failure_keeps_job(self, ledger, treasury):
        post(ledger)
        treasury.rejecting.add(PAYER)
        with pytest.raises(TransferFailed):
            ledger.cancel(42, PAYER)
        assert ledger.get_details(42).exists
        assert treasury.held == NATIVE_1000_AT_3000

    def test_job_id_reusable_after_cancel(self, ledger):
        post(ledger)
        ledger.cancel(42, PAYER)
        assert post(ledger) == NATIVE_1000_AT_3000


class TestSurplus:
    def test_owner_sweeps_retained_excess(self, ledger, treasury):
        post(ledger, job_id=1, funds=NATIVE_1000_AT_3000 + 300)
        post(ledger, job_id=2, funds=NATIVE_1000_AT_3000 + 700)

        assert ledger.sweep_surplus(OWNER) == 1000
        assert treasury.balance_of(OWNER) == 1000
        assert ledger.retained_surplus() == 0
        assert treasury.held == 2 * NATIVE_1000_AT_3000

    def test_sweep_is_owner_only(self, ledger):
        post(ledger, funds=NATIVE_1000_AT_3000 + 1)
        with pytest.raises(Unauthorized):
            ledger.sweep_surplus(PAYER)
        assert ledger.retained_surplus() == 1


class TestReads:
    def test_unknown_job_reads_as_zero_value(self, ledger):
        details = ledger.get_details(123)
        assert not details.exists
        assert details.native_amount == 0

    def test_details_are_copies(self, ledger):
        post(ledger)
        ledger.get_details(42).is_completed = True
        assert not ledger.get_details(42).is_completed


class TestTreasury:
    def test_transfer_requires_balance(self):
        t = Treasury()
        t.mint(PAYER, 10)
        with pytest.raises(TransferFailed):
            t.transfer(PAYER, PAYEE, 11)
        t.transfer(PAYER, PAYEE, 10)
        assert t.balance_of(PAYEE) == 10
        assert t.balance_of(PAYER) == 0

    def test_addresses_are_case_insensitive(self):
        t = Treasury()
        t.mint(PAYER.lower(), 5)
        assert t.balance_of(PAYER.upper().replace("0X", "0x")) == 5
