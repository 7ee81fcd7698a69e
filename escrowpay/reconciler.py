"""
Status mirror reconciler.

Keeps the persisted status consistent with ledger truth:

  - record_attempt: right after a write is broadcast -> <stage>_initiated + tx hash
  - confirm_stage:  after the stage's effect is verified final -> deposited/released/refunded
  - tick:           periodic scan of *_initiated rows; re-reads the ledger and either
                    confirms, leaves pending (inside the grace window), or flags a
                    divergence for an operator. Never forces a status it cannot verify.

The mirror is not authoritative for funds: a failed mirror update never undoes a
ledger write, it just waits here to be healed.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from escrowpay.errors import DivergenceDetected, InvalidTransition, MirrorError, MirrorRecordNotFound
from escrowpay.mirror import INITIATED, StatusStore, is_allowed, is_backward
from escrowpay.orchestrator import TransactionOrchestrator
from escrowpay.schema import JobDetails, MirrorRecord, PaymentStatus, Stage, utcnow

logger = logging.getLogger(__name__)

RECONCILE_INTERVAL = 30.0
CAS_RETRIES = 5

PENDING = "pending"
CONFIRM = "confirm"


@dataclass
class ReconcileReport:
    confirmed: List[int] = field(default_factory=list)
    pending: List[int] = field(default_factory=list)
    diverged: List[DivergenceDetected] = field(default_factory=list)
    errors: List[int] = field(default_factory=list)

    @property
    def diverged_ids(self) -> List[int]:
        return [d.job_id for d in self.diverged]


class StatusReconciler:
    def __init__(
        self,
        store: StatusStore,
        orchestrator: TransactionOrchestrator,
        grace_seconds: float = 0.0,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.grace_seconds = grace_seconds

    # --- mirror updates ---

    def record_attempt(
        self,
        job_id: int,
        stage: Stage,
        tx_hash: Optional[str],
        usd_amount: Optional[int] = None,
    ) -> MirrorRecord:
        """Move to <stage>_initiated and store tx_hash. Re-recording the same stage overwrites the hash."""
        self.store.create(job_id, usd_amount)
        target = stage.initiated
        for _ in range(CAS_RETRIES):
            record = self._get(job_id)
            if not is_allowed(record.payment_status, target):
                logger.warning("Refusing %s for job %s: status is %s", target.value, job_id, record.payment_status.value)
                raise InvalidTransition(f"job {job_id}: {record.payment_status.value} -> {target.value} not allowed")
            if self.store.compare_and_set_status(job_id, record.payment_status, target, tx_hash):
                logger.info("Job %s: %s (%s)", job_id, target.value, tx_hash)
                return self._get(job_id)
        raise MirrorError(f"job {job_id}: status kept changing while recording {target.value}")

    def confirm_stage(self, job_id: int, stage: Stage) -> bool:
        """
        <stage>_initiated -> confirmed status. Idempotent: already confirmed is a no-op.

        Returns False (and logs) when the record is elsewhere in the lifecycle; a
        backward move is never applied.
        """
        target = stage.confirmed
        for _ in range(CAS_RETRIES):
            record = self._get(job_id)
            current = record.payment_status
            if current == target:
                return True
            if current != stage.initiated:
                if is_backward(current, target):
                    logger.warning("Rejected backward transition for job %s: %s -> %s", job_id, current.value, target.value)
                else:
                    logger.warning("Cannot confirm %s for job %s from %s", stage.value, job_id, current.value)
                return False
            if self.store.compare_and_set_status(job_id, current, target):
                logger.info("Job %s: %s", job_id, target.value)
                return True
        raise MirrorError(f"job {job_id}: status kept changing while confirming {target.value}")

    def _get(self, job_id: int) -> MirrorRecord:
        record = self.store.get(job_id)
        if record is None:
            raise MirrorRecordNotFound(f"No status record for job {job_id}")
        return record

    # --- verification against the ledger ---

    def _evaluate(self, record: MirrorRecord, details: JobDetails) -> str:
        """CONFIRM, PENDING, or a divergence reason."""
        status = record.payment_status
        age = (utcnow() - record.updated_at).total_seconds()
        within_grace = age < self.grace_seconds

        if status == PaymentStatus.DEPOSIT_INITIATED:
            if not details.exists:
                return PENDING if within_grace else "deposit not found on ledger (transaction never landed)"
            if record.usd_amount is not None and details.usd_amount != record.usd_amount:
                return f"ledger usd amount {details.usd_amount} != mirror usd amount {record.usd_amount}"
            return CONFIRM

        if status == PaymentStatus.RELEASE_INITIATED:
            if not details.exists:
                return "job absent on ledger while release pending (cancelled?)"
            if details.is_completed and details.is_paid:
                return CONFIRM
            if details.is_completed:
                return "ledger shows completed but unpaid"
            return PENDING if within_grace else "release not observed: job still open on ledger"

        if status == PaymentStatus.REFUND_INITIATED:
            if not details.exists:
                return CONFIRM
            if details.is_completed:
                return "job was released on ledger, not refunded"
            return PENDING if within_grace else "refund not observed: job still open on ledger"

        return PENDING

    def verify_and_confirm(self, job_id: int, stage: Stage) -> Optional[DivergenceDetected]:
        """
        Read the ledger and confirm ``stage`` only if it shows the stage's effect.
        Returns the divergence (also persisted and logged) or None.
        """
        record = self._get(job_id)
        if record.payment_status == stage.confirmed:
            return None
        if record.payment_status != stage.initiated:
            raise InvalidTransition(
                f"job {job_id}: cannot confirm {stage.value} from {record.payment_status.value}"
            )
        details = self.orchestrator.get_job_details(job_id)
        outcome = self._evaluate(record, details)
        if outcome == CONFIRM:
            self.confirm_stage(job_id, stage)
            return None
        if outcome == PENDING:
            return None
        return self._flag(record, outcome)

    def _flag(self, record: MirrorRecord, reason: str) -> DivergenceDetected:
        divergence = DivergenceDetected(job_id=record.job_id, status=record.payment_status.value, reason=reason)
        if record.divergence != reason:
            logger.error("DivergenceDetected: %s", divergence)
        self.store.mark_divergence(record.job_id, reason)
        return divergence

    # --- periodic entry point ---

    def tick(self) -> ReconcileReport:
        """One reconciliation pass over every record stuck in a *_initiated state."""
        report = ReconcileReport()
        for record in self.store.list_by_status(INITIATED):
            job_id = record.job_id
            try:
                details = self.orchestrator.get_job_details(job_id)
                outcome = self._evaluate(record, details)
                if outcome == CONFIRM:
                    if self.confirm_stage(job_id, record.payment_status.stage):
                        report.confirmed.append(job_id)
                elif outcome == PENDING:
                    report.pending.append(job_id)
                else:
                    report.diverged.append(self._flag(record, outcome))
            except Exception:
                logger.exception("Reconcile of job %s failed; will retry next tick", job_id)
                report.errors.append(job_id)
        if report.confirmed or report.diverged or report.errors:
            logger.info(
                "Reconcile tick: %d confirmed, %d pending, %d diverged, %d errors",
                len(report.confirmed), len(report.pending), len(report.diverged), len(report.errors),
            )
        return report


class PeriodicReconciler:
    """Runs reconciler.tick() every ``interval`` seconds on a daemon thread until stop()."""

    def __init__(self, reconciler: StatusReconciler, interval: float = RECONCILE_INTERVAL):
        self.reconciler = reconciler
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_forever(self) -> None:
        while not self._stop.is_set():
            try:
                self.reconciler.tick()
            except Exception:
                logger.exception("Reconcile tick failed; retrying in %.1fs", self.interval)
            self._stop.wait(self.interval)

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="escrow-reconciler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
