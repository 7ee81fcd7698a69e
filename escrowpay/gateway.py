"""
EscrowGateway: one method per application intent.

    offer accepted   -> post_job      (fund escrow, mirror: deposit_initiated -> deposited)
    work approved    -> complete_job  (release,     mirror: release_initiated -> released)
    cancelled        -> cancel_job    (refund,      mirror: refund_initiated  -> refunded)

The ledger decides; the mirror follows. A mirror update that fails after a
ledger write is logged and left for the reconciler, never rolled back.

Usage:
    gateway = build_gateway(Settings.from_env())
    result = gateway.post_job(42, payee, "1000")
"""

import logging
from decimal import Decimal
from typing import Optional, Union

from escrowpay.backends import get_backend
from escrowpay.config import Settings
from escrowpay.database import SqlStatusStore
from escrowpay.errors import MirrorRecordNotFound, TransactionTimeout, ValidationError
from escrowpay.mirror import StatusStore
from escrowpay.oracle import fixed_to_usd, usd_to_fixed
from escrowpay.orchestrator import TransactionOrchestrator, validate_address, validate_job_id
from escrowpay.reconciler import StatusReconciler
from escrowpay.schema import JobStatusResponse, PaymentStatus, PostJobRequest, Stage, TransactionResult
from escrowpay.wallet import GatewayWallet

logger = logging.getLogger(__name__)


class EscrowGateway:
    def __init__(self, orchestrator: TransactionOrchestrator, reconciler: StatusReconciler):
        self.orchestrator = orchestrator
        self.reconciler = reconciler

    @property
    def store(self) -> StatusStore:
        return self.reconciler.store

    @property
    def wallet(self) -> GatewayWallet:
        return self.orchestrator.wallet

    def close(self) -> None:
        self.orchestrator.close()

    # --- writes ---

    def post_job(
        self,
        job_id: int,
        payee: str,
        usd_amount: Union[str, int, Decimal],
        payer: Optional[str] = None,
    ) -> TransactionResult:
        """Fund escrow. ``usd_amount`` is in dollars ("1000", "12.50"); ``payer`` must be the gateway wallet."""
        validate_job_id(job_id)
        fixed = usd_to_fixed(usd_amount)
        if payer is not None:
            payer = validate_address(payer, "payer")
            if not self.wallet.owns(payer):
                raise ValidationError("Client address mismatch: payer must be the gateway signing wallet")
        try:
            result = self.orchestrator.post_job(job_id, payee, fixed, payer=payer)
        except TransactionTimeout as e:
            self._record_unknown_outcome(job_id, Stage.DEPOSIT, e, fixed)
            raise
        self._follow(job_id, Stage.DEPOSIT, result, fixed)
        return result

    def post_job_request(self, req: PostJobRequest) -> TransactionResult:
        return self.post_job(req.job_id, req.payee_address, req.usd_amount, payer=req.payer_address)

    def complete_job(self, job_id: int) -> TransactionResult:
        """Release escrow (fee to platform, remainder to payee). Mirror must be deposited."""
        validate_job_id(job_id)
        self._require_deposited(job_id, "complete")
        try:
            result = self.orchestrator.complete_job(job_id)
        except TransactionTimeout as e:
            self._record_unknown_outcome(job_id, Stage.RELEASE, e)
            raise
        self._follow(job_id, Stage.RELEASE, result)
        return result

    def cancel_job(self, job_id: int) -> TransactionResult:
        """Refund escrow to the payer. Mirror must be deposited."""
        validate_job_id(job_id)
        self._require_deposited(job_id, "cancel")
        try:
            result = self.orchestrator.cancel_job(job_id)
        except TransactionTimeout as e:
            self._record_unknown_outcome(job_id, Stage.REFUND, e)
            raise
        self._follow(job_id, Stage.REFUND, result)
        return result

    def _require_deposited(self, job_id: int, action: str) -> None:
        record = self.store.get(job_id)
        if record is None or record.payment_status == PaymentStatus.NONE:
            # No mirror row: the ledger decides. Adopt a live job as deposited.
            details = self.orchestrator.get_job_details(job_id)
            if details.exists and not details.is_completed:
                self._mirror(self.reconciler.record_attempt, job_id, Stage.DEPOSIT, None, details.usd_amount)
                self._mirror(self.reconciler.confirm_stage, job_id, Stage.DEPOSIT)
            return
        if record.payment_status != PaymentStatus.DEPOSITED:
            raise ValidationError(
                f"Cannot {action} job: payment status is '{record.payment_status.value}', expected 'deposited'"
            )

    def _follow(self, job_id: int, stage: Stage, result: TransactionResult, usd_amount: Optional[int] = None) -> None:
        """Mirror a mined write. Reverts leave the ledger unchanged, so they leave the mirror unchanged too."""
        if not result.success:
            return
        if self._mirror(self.reconciler.record_attempt, job_id, stage, result.tx_hash, usd_amount):
            self._mirror(self.reconciler.confirm_stage, job_id, stage)

    def _record_unknown_outcome(
        self, job_id: int, stage: Stage, timeout: TransactionTimeout, usd_amount: Optional[int] = None
    ) -> None:
        if timeout.tx_hash is None:
            return
        self._mirror(self.reconciler.record_attempt, job_id, stage, timeout.tx_hash, usd_amount)

    @staticmethod
    def _mirror(update, job_id: int, *args) -> bool:
        try:
            update(job_id, *args)
            return True
        except Exception as e:
            logger.warning("Failed to update payment status for job %s: %s", job_id, e)
            return False

    # --- reads ---

    def job_status(self, job_id: int) -> JobStatusResponse:
        validate_job_id(job_id)
        record = self.store.get(job_id)
        if record is None:
            raise MirrorRecordNotFound(f"No payment record for job {job_id}")
        return JobStatusResponse(
            job_id=record.job_id,
            payment_status=record.payment_status,
            usd_amount=str(fixed_to_usd(record.usd_amount)) if record.usd_amount is not None else None,
            tx_hash_deposit=record.tx_hash_deposit,
            tx_hash_release=record.tx_hash_release,
            tx_hash_refund=record.tx_hash_refund,
            divergence=record.divergence,
            updated_at=record.updated_at,
        )

    def confirm(self, job_id: int, stage: Stage) -> JobStatusResponse:
        """Verify ``stage`` on the ledger and confirm it if final. Divergence shows up on the returned status."""
        validate_job_id(job_id)
        divergence = self.reconciler.verify_and_confirm(job_id, stage)
        if divergence is not None:
            logger.info("Confirm %s for job %s found divergence: %s", stage.value, job_id, divergence.reason)
        return self.job_status(job_id)

    def eth_price(self) -> Decimal:
        return self.orchestrator.get_eth_usd_price()


def build_gateway(
    settings: Settings,
    wallet: Optional[GatewayWallet] = None,
    store: Optional[StatusStore] = None,
) -> EscrowGateway:
    """Wire wallet, ledger backend, orchestrator, status store and reconciler from settings."""
    settings.validate_for_backend()
    if wallet is None:
        if settings.private_key:
            wallet = GatewayWallet.from_key(settings.private_key)
        elif settings.backend == "local":
            wallet = GatewayWallet.generate()
            logger.info("No PRIVATE_KEY set; using throwaway wallet %s on the local chain", wallet.address)
        else:
            wallet = GatewayWallet()
    client = get_backend(settings, wallet)
    orchestrator = TransactionOrchestrator(
        client,
        wallet,
        write_timeout=settings.write_timeout,
        read_timeout=settings.read_timeout,
        price_buffer_bps=settings.price_buffer_bps,
    )
    if store is None:
        store = SqlStatusStore.from_url(settings.database_url)
    reconciler = StatusReconciler(store, orchestrator, grace_seconds=settings.reconcile_grace)
    logger.info("Escrow gateway ready: backend=%s wallet=%s", settings.backend, wallet.address)
    return EscrowGateway(orchestrator, reconciler)
