import argparse
import logging
import sys
from typing import Optional

from database import init_db
from runtime import build_runtime
from scheduler import SchedulerManager


logger = logging.getLogger(__name__)

JOBS = ("recurring", "budget_alerts", "monthly_reports")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recurring-ledger",
        description="Recurring transaction, budget alert and monthly report jobs.",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create the ledger tables")
    sub.add_parser("scheduler", help="Run the periodic triggers in the foreground")
    run_once = sub.add_parser("run-once", help="Run one batch pass immediately")
    run_once.add_argument("job", choices=JOBS)
    worker = sub.add_parser("worker", help="Start a Celery worker for work items")
    worker.add_argument("--concurrency", type=int, default=None)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO)
    args = build_parser().parse_args(argv)

    if args.command == "worker":
        from celery_app import celery_app

        worker_argv = ["worker", "--loglevel=INFO"]
        if args.concurrency:
            worker_argv.append(f"--concurrency={args.concurrency}")
        celery_app.worker_main(worker_argv)
        return 0

    runtime = build_runtime()
    try:
        if args.command == "init-db":
            init_db(runtime.engine)
            logger.info("init_db: tables created")
            return 0
        manager = SchedulerManager(runtime, blocking=args.command == "scheduler")
        if args.command == "run-once":
            result = manager.run_job(args.job, source="cli")
            return 0 if result is not None else 1
        try:
            manager.start()
        except (KeyboardInterrupt, SystemExit):
            manager.stop()
        return 0
    finally:
        runtime.close()


if __name__ == "__main__":
    sys.exit(main())
