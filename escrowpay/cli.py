"""
escrowpay CLI.

Commands:
  escrowpay serve              - HTTP gateway on SERVER_PORT, reconciler in the background
  escrowpay reconcile [--once] - run reconciliation ticks (forever, or one pass)
  escrowpay status <job_id>    - mirror status for a job, next to what the ledger says
  escrowpay price              - current ETH/USD price from the feed
"""

import json
import logging
import sys

from escrowpay.config import Settings
from escrowpay.errors import EscrowError
from escrowpay.gateway import build_gateway
from escrowpay.reconciler import PeriodicReconciler

logger = logging.getLogger("escrowpay")


def _setup_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def serve_command(settings: Settings) -> None:
    import uvicorn

    from escrowpay.server import create_app

    app = create_app(settings=settings)
    print(f"Payment gateway listening on port {settings.server_port} (backend: {settings.backend})")
    uvicorn.run(app, host="0.0.0.0", port=settings.server_port, log_level=settings.log_level.lower())


def reconcile_command(settings: Settings, once: bool) -> None:
    gateway = build_gateway(settings)
    try:
        if once:
            report = gateway.reconciler.tick()
            print(f"confirmed: {report.confirmed}")
            print(f"pending:   {report.pending}")
            print(f"errors:    {report.errors}")
            for d in report.diverged:
                print(f"DIVERGED   {d}")
            if report.diverged:
                sys.exit(2)
            return
        runner = PeriodicReconciler(gateway.reconciler, interval=settings.reconcile_interval)
        print(f"Reconciling every {settings.reconcile_interval:.0f}s (Ctrl+C to stop)")
        try:
            runner.run_forever()
        except KeyboardInterrupt:
            runner.stop()
    finally:
        gateway.close()


def status_command(settings: Settings, job_id_arg: str) -> None:
    try:
        job_id = int(job_id_arg)
    except ValueError:
        print(f"Invalid job ID: {job_id_arg}")
        sys.exit(1)
    gateway = build_gateway(settings)
    try:
        details = gateway.orchestrator.get_job_details(job_id)
        record = gateway.store.get(job_id)
        out = {
            "ledger": details.model_dump() if details.exists else None,
            "mirror": gateway.job_status(job_id).model_dump(mode="json") if record is not None else None,
        }
        print(json.dumps(out, indent=2, default=str))
    finally:
        gateway.close()


def price_command(settings: Settings) -> None:
    gateway = build_gateway(settings)
    try:
        print(f"ETH/USD: {gateway.eth_price()}")
    finally:
        gateway.close()


def main():
    if len(sys.argv) < 2:
        print("escrowpay - escrow payment gateway")
        print("\nCommands:")
        print("  escrowpay serve              - Start HTTP gateway (+ background reconciler)")
        print("  escrowpay reconcile [--once] - Reconcile *_initiated payment records with the ledger")
        print("  escrowpay status <job_id>    - Show mirror and ledger state for a job")
        print("  escrowpay price              - Current ETH/USD price")
        print("\nConfig comes from the environment or .env (ETHEREUM_RPC_URL, CONTRACT_ADDRESS, PRIVATE_KEY, DATABASE_URL, ...)")
        sys.exit(1)

    command = sys.argv[1]
    try:
        settings = Settings.from_env()
        _setup_logging(settings)
        if command == "serve":
            serve_command(settings)
        elif command == "reconcile":
            reconcile_command(settings, once="--once" in sys.argv[2:])
        elif command == "status":
            if len(sys.argv) < 3:
                print("Usage: escrowpay status <job_id>")
                sys.exit(1)
            status_command(settings, sys.argv[2])
        elif command == "price":
            price_command(settings)
        else:
            print(f"Unknown command: {command}")
            print("Use 'escrowpay serve', 'escrowpay reconcile [--once]', 'escrowpay status <job_id>', 'escrowpay price'")
            sys.exit(1)
    except EscrowError as e:
        logger.error("%s", e)
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
