"""
Status mirror: allowed transitions and the status-store contract.

paymentStatus only moves forward along

    none -> deposit_initiated -> deposited -> release_initiated -> released
                                           -> refund_initiated  -> refunded

Re-recording the same *_initiated status is allowed (new tx hash overwrites
the old one). Every store applies changes with compare-and-set on the status,
so a stale writer can never overwrite a later state.
"""

import threading
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol

from escrowpay.errors import InvalidTransition, MirrorRecordNotFound
from escrowpay.schema import MirrorRecord, PaymentStatus, utcnow

S = PaymentStatus

ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    S.NONE: frozenset({S.DEPOSIT_INITIATED}),
    S.DEPOSIT_INITIATED: frozenset({S.DEPOSIT_INITIATED, S.DEPOSITED}),
    S.DEPOSITED: frozenset({S.RELEASE_INITIATED, S.REFUND_INITIATED}),
    S.RELEASE_INITIATED: frozenset({S.RELEASE_INITIATED, S.RELEASED}),
    S.REFUND_INITIATED: frozenset({S.REFUND_INITIATED, S.REFUNDED}),
    S.RELEASED: frozenset(),
    S.REFUNDED: frozenset(),
}

# Position along the lifecycle; release and refund branches share ranks.
RANK: Dict[PaymentStatus, int] = {
    S.NONE: 0,
    S.DEPOSIT_INITIATED: 1,
    S.DEPOSITED: 2,
    S.RELEASE_INITIATED: 3,
    S.REFUND_INITIATED: 3,
    S.RELEASED: 4,
    S.REFUNDED: 4,
}

TERMINAL = frozenset({S.RELEASED, S.REFUNDED})
INITIATED = frozenset(s for s in PaymentStatus if s.is_initiated)


def is_allowed(old: PaymentStatus, new: PaymentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[old]


def is_backward(old: PaymentStatus, new: PaymentStatus) -> bool:
    return RANK[new] < RANK[old]


def check_transition(old: PaymentStatus, new: PaymentStatus) -> None:
    if not is_allowed(old, new):
        raise InvalidTransition(f"{old.value} -> {new.value} is not an allowed transition")


class StatusStore(Protocol):
    def get(self, job_id: int) -> Optional[MirrorRecord]:
        ...

    def create(self, job_id: int, usd_amount: Optional[int] = None) -> MirrorRecord:
        """Insert a `none` record if absent. Returns the stored record either way."""
        ...

    def compare_and_set_status(
        self,
        job_id: int,
        expected: PaymentStatus,
        new: PaymentStatus,
        tx_hash: Optional[str] = None,
    ) -> bool:
        """
        Atomically set status to ``new`` iff it is currently ``expected``.
        ``tx_hash`` goes to the hash column of new's stage. Clears any divergence mark.
        Raises InvalidTransition for pairs outside ALLOWED_TRANSITIONS.
        """
        ...

    def mark_divergence(self, job_id: int, reason: str) -> None:
        ...

    def list_by_status(self, statuses: Iterable[PaymentStatus]) -> List[MirrorRecord]:
        ...


class InMemoryStatusStore:
    """Process-local store; one lock gives row-level CAS."""

    def __init__(self):
        self._records: Dict[int, MirrorRecord] = {}
        self._lock = threading.Lock()

    def get(self, job_id: int) -> Optional[MirrorRecord]:
        with self._lock:
            record = self._records.get(job_id)
            return record.model_copy() if record is not None else None

    def create(self, job_id: int, usd_amount: Optional[int] = None) -> MirrorRecord:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                record = MirrorRecord(job_id=job_id, usd_amount=usd_amount)
                self._records[job_id] = record
            elif record.usd_amount is None and usd_amount is not None:
                record.usd_amount = usd_amount
            return record.model_copy()

    def compare_and_set_status(
        self,
        job_id: int,
        expected: PaymentStatus,
        new: PaymentStatus,
        tx_hash: Optional[str] = None,
    ) -> bool:
        check_transition(expected, new)
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise MirrorRecordNotFound(f"No status record for job {job_id}")
            if record.payment_status != expected:
                return False
            record.payment_status = new
            if tx_hash is not None and new.stage is not None:
                setattr(record, new.stage.hash_field, tx_hash)
            record.divergence = None
            record.updated_at = utcnow()
            return True

    def mark_divergence(self, job_id: int, reason: str) -> None:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise MirrorRecordNotFound(f"No status record for job {job_id}")
            if record.divergence != reason:
                record.divergence = reason
                record.updated_at = utcnow()

    def list_by_status(self, statuses: Iterable[PaymentStatus]) -> List[MirrorRecord]:
        wanted = set(statuses)
        with self._lock:
            return [r.model_copy() for r in self._records.values() if r.payment_status in wanted]
