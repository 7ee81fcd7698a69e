"""
HTTP adapter for the escrow gateway (FastAPI).

    POST /post-job                  offer accepted -> fund escrow
    POST /complete-job?job_id=X     work approved  -> release payment
    POST /cancel-job?job_id=X       cancel         -> refund
    GET  /job-status?job_id=X       mirror status (+ as_of)
    POST /confirm-deposit?job_id=X  verify on ledger, then confirm
    POST /confirm-release?job_id=X
    POST /confirm-refund?job_id=X
    GET  /eth-price
    GET  /health

Run: escrowpay serve   (or uvicorn "escrowpay.server:create_app" --factory)
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from escrowpay.config import Settings
from escrowpay.errors import (
    EscrowError,
    InvalidTransition,
    LedgerRejection,
    MirrorRecordNotFound,
    PriceUnavailable,
    SubmissionError,
    TransactionTimeout,
    ValidationError,
)
from escrowpay.gateway import EscrowGateway, build_gateway
from escrowpay.reconciler import PeriodicReconciler
from escrowpay.schema import MAX_JOB_ID, JobStatusResponse, PostJobRequest, Stage, TransactionResult

logger = logging.getLogger(__name__)

JOB_ID = Query(..., ge=0, le=MAX_JOB_ID, description="Escrow job id (uint64)")


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request", detail=jsonable_errors(exc))

    @app.exception_handler(ValidationError)
    async def _invalid(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(LedgerRejection)
    async def _rejected(request: Request, exc: LedgerRejection):
        return _error(409, exc.reason, code=type(exc).__name__)

    @app.exception_handler(InvalidTransition)
    async def _conflict(request: Request, exc: InvalidTransition):
        return _error(409, str(exc))

    @app.exception_handler(MirrorRecordNotFound)
    async def _not_found(request: Request, exc: MirrorRecordNotFound):
        return _error(404, str(exc))

    @app.exception_handler(TransactionTimeout)
    async def _timeout(request: Request, exc: TransactionTimeout):
        # Outcome unknown: the caller gets the hash to poll, never a resubmit hint.
        return _error(504, str(exc), tx_hash=exc.tx_hash)

    @app.exception_handler(PriceUnavailable)
    async def _no_price(request: Request, exc: PriceUnavailable):
        return _error(503, f"Failed to get ETH price: {exc}")

    @app.exception_handler(SubmissionError)
    async def _not_submitted(request: Request, exc: SubmissionError):
        return _error(502, f"Failed to submit transaction: {exc}")

    @app.exception_handler(EscrowError)
    async def _internal(request: Request, exc: EscrowError):
        logger.error("Unhandled gateway error on %s: %s", request.url.path, exc)
        return _error(500, str(exc))


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]


def create_app(
    gateway: Optional[EscrowGateway] = None,
    settings: Optional[Settings] = None,
    run_reconciler: bool = True,
) -> FastAPI:
    """
    Build the app. With no gateway, one is built from settings (or the environment).
    The reconciler runs in a background thread for the lifetime of the app.
    """
    if settings is None:
        settings = Settings.from_env()
    if gateway is None:
        gateway = build_gateway(settings)
    runner = PeriodicReconciler(gateway.reconciler, interval=settings.reconcile_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_reconciler:
            runner.start()
            logger.info("Reconciler running every %.0fs", runner.interval)
        yield
        runner.stop(timeout=5)
        gateway.close()

    app = FastAPI(title="escrowpay", lifespan=lifespan)
    app.state.gateway = gateway
    _install_error_handlers(app)

    @app.post("/post-job", response_model=TransactionResult)
    def post_job(req: PostJobRequest):
        return gateway.post_job_request(req)

    @app.post("/complete-job", response_model=TransactionResult)
    def complete_job(job_id: int = JOB_ID):
        return gateway.complete_job(job_id)

    @app.post("/cancel-job", response_model=TransactionResult)
    def cancel_job(job_id: int = JOB_ID):
        return gateway.cancel_job(job_id)

    @app.get("/job-status", response_model=JobStatusResponse)
    def job_status(job_id: int = JOB_ID):
        return gateway.job_status(job_id)

    @app.post("/confirm-deposit", response_model=JobStatusResponse)
    def confirm_deposit(job_id: int = JOB_ID):
        return gateway.confirm(job_id, Stage.DEPOSIT)

    @app.post("/confirm-release", response_model=JobStatusResponse)
    def confirm_release(job_id: int = JOB_ID):
        return gateway.confirm(job_id, Stage.RELEASE)

    @app.post("/confirm-refund", response_model=JobStatusResponse)
    def confirm_refund(job_id: int = JOB_ID):
        return gateway.confirm(job_id, Stage.REFUND)

    @app.get("/eth-price")
    def eth_price():
        return {"eth_usd_price": str(gateway.eth_price())}

    @app.get("/health", response_class=PlainTextResponse)
    def health():
        return "OK"

    return app
