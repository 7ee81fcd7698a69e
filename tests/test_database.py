"""Tests for the SQLAlchemy status store (in-memory SQLite)."""

import threading

import pytest

from escrowpay.database import SqlStatusStore
from escrowpay.errors import InvalidTransition, MirrorRecordNotFound
from escrowpay.mirror import INITIATED
from escrowpay.schema import MAX_JOB_ID
from escrowpay.schema import PaymentStatus as S

from conftest import USD


@pytest.fixture
def sql_store():
    return SqlStatusStore.from_url("sqlite:///:memory:")


class TestSqlStatusStore:
    def test_create_and_get(self, sql_store):
        record = sql_store.create(42, usd_amount=1000 * USD)

        assert record.job_id == 42
        assert record.payment_status == S.NONE
        assert record.usd_amount == 1000 * USD
        assert record.updated_at.tzinfo is not None
        assert sql_store.get(42).usd_amount == 1000 * USD
        assert sql_store.get(43) is None

    def test_create_is_idempotent(self, sql_store):
        sql_store.create(1)
        sql_store.compare_and_set_status(1, S.NONE, S.DEPOSIT_INITIATED, "0xaa")
        again = sql_store.create(1, usd_amount=5)

        assert again.payment_status == S.DEPOSIT_INITIATED
        assert again.usd_amount == 5

    def test_uint64_job_ids(self, sql_store):
        sql_store.create(MAX_JOB_ID)
        assert sql_store.get(MAX_JOB_ID).job_id == MAX_JOB_ID

    def test_full_lifecycle_keeps_hashes(self, sql_store):
        sql_store.create(42)
        assert sql_store.compare_and_set_status(42, S.NONE, S.DEPOSIT_INITIATED, "0xd")
        assert sql_store.compare_and_set_status(42, S.DEPOSIT_INITIATED, S.DEPOSITED)
        assert sql_store.compare_and_set_status(42, S.DEPOSITED, S.RELEASE_INITIATED, "0xr")
        assert sql_store.compare_and_set_status(42, S.RELEASE_INITIATED, S.RELEASED)

        record = sql_store.get(42)
        assert record.payment_status == S.RELEASED
        assert record.tx_hash_deposit == "0xd"
        assert record.tx_hash_release == "0xr"
        assert record.tx_hash_refund is None

    def test_rerecord_overwrites_hash(self, sql_store):
        sql_store.create(1)
        sql_store.compare_and_set_status(1, S.NONE, S.DEPOSIT_INITIATED, "0xold")
        assert sql_store.compare_and_set_status(1, S.DEPOSIT_INITIATED, S.DEPOSIT_INITIATED, "0xnew")
        assert sql_store.get(1).tx_hash_deposit == "0xnew"

    def test_cas_mismatch_returns_false(self, sql_store):
        sql_store.create(1)
        sql_store.compare_and_set_status(1, S.NONE, S.DEPOSIT_INITIATED)
        sql_store.compare_and_set_status(1, S.DEPOSIT_INITIATED, S.DEPOSITED)

        assert not sql_store.compare_and_set_status(1, S.DEPOSIT_INITIATED, S.DEPOSITED)
        assert sql_store.get(1).payment_status == S.DEPOSITED

    def test_backward_transition_refused(self, sql_store):
        sql_store.create(1)
        with pytest.raises(InvalidTransition):
            sql_store.compare_and_set_status(1, S.DEPOSITED, S.DEPOSIT_INITIATED)

    def test_missing_record(self, sql_store):
        with pytest.raises(MirrorRecordNotFound):
            sql_store.compare_and_set_status(9, S.NONE, S.DEPOSIT_INITIATED)
        with pytest.raises(MirrorRecordNotFound):
            sql_store.mark_divergence(9, "gone")

    def test_divergence_round_trip(self, sql_store):
        sql_store.create(11)
        sql_store.compare_and_set_status(11, S.NONE, S.DEPOSIT_INITIATED, "0x11")
        sql_store.mark_divergence(11, "deposit not found on ledger")

        record = sql_store.get(11)
        assert record.divergence == "deposit not found on ledger"
        assert record.payment_status == S.DEPOSIT_INITIATED

        sql_store.compare_and_set_status(11, S.DEPOSIT_INITIATED, S.DEPOSITED)
        assert sql_store.get(11).divergence is None

    def test_list_by_status(self, sql_store):
        for job_id in (1, 2, 3):
            sql_store.create(job_id)
        sql_store.compare_and_set_status(1, S.NONE, S.DEPOSIT_INITIATED)
        sql_store.compare_and_set_status(3, S.NONE, S.DEPOSIT_INITIATED)
        sql_store.compare_and_set_status(3, S.DEPOSIT_INITIATED, S.DEPOSITED)

        assert [r.job_id for r in sql_store.list_by_status(INITIATED)] == [1]
        assert {r.job_id for r in sql_store.list_by_status([S.NONE, S.DEPOSITED])} == {2, 3}

    def test_file_database_persists(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'mirror.db'}"
        SqlStatusStore.from_url(url).create(5, usd_amount=1)
        assert SqlStatusStore.from_url(url).get(5).usd_amount == 1


class TestThreads:
    def test_memory_store_shared_across_threads(self, sql_store):
        worker = threading.Thread(target=sql_store.create, args=(8,))
        worker.start()
        worker.join()
        assert sql_store.get(8) is not None
