import argparse
import signal
import sys
import threading

import dramatiq
from dotenv import load_dotenv
from loguru import logger

from clubhub.bootstrap import WORKERS, container_from_environment, register_workers
from clubhub.db.db import create_database, run_migrations
from clubhub.notifications.producer import purge_expired
from clubhub.queue.broker import QueueBroker
from clubhub.settings.manager import SettingsManager
from clubhub.utils.logging import log_cleaner, setup_logger


def run_worker(args, settings) -> int:
    container = container_from_environment(settings, directory_path=args.directory, audit=args.audit)
    queues = register_workers(container, args.queues)
    broker = container[QueueBroker]

    if not broker.ping():
        logger.error("Broker is not reachable, refusing to start workers")
        return 1

    worker = dramatiq.Worker(
        broker.broker,
        queues=set(queues),
        worker_threads=args.threads or settings.queue.worker_threads,
    )
    stop = threading.Event()

    def _shutdown(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down workers...")
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    worker.start()
    logger.log("PROGRAM", f"Workers started on {', '.join(queues)}")
    try:
        while not stop.wait(timeout=60):
            log_cleaner(settings.logging)
    finally:
        worker.stop()
        broker.close()
    logger.log("PROGRAM", "Workers stopped")
    return 0


def purge_notifications(args, settings) -> int:
    db = create_database(settings.database.host)
    purge_expired(db, args.days or settings.notifications.retention_days)
    return 0


def handle_args(argv=None) -> argparse.Namespace:
    """Parse CLI arguments for the job core entrypoint."""
    parser = argparse.ArgumentParser(prog="clubhub", description="ClubHub job core")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", help="Run Dramatiq workers in-process.")
    worker.add_argument(
        "--queues",
        nargs="*",
        choices=sorted(WORKERS),
        help="Workers to run (default: all).",
    )
    worker.add_argument("--threads", type=int, help="Worker threads (default: queue.worker_threads).")
    worker.add_argument(
        "--directory",
        metavar="MODULE:ATTR",
        help="Recipient directory import path (default: $CLUBHUB_DIRECTORY).",
    )
    worker.add_argument(
        "--audit",
        choices=("log", "db"),
        default="log",
        help="Audit sink: log only, or the AuditLog table.",
    )

    subparsers.add_parser("migrate", help="Run database migrations up to head.")

    purge = subparsers.add_parser("purge-notifications", help="Delete expired notifications.")
    purge.add_argument(
        "--days",
        type=int,
        help="Retention in days (default: notifications.retention_days).",
    )

    subparsers.add_parser("clean-logs", help="Remove old log files.")

    return parser.parse_args(argv)


def main(argv=None) -> int:
    load_dotenv()
    args = handle_args(argv)

    settings = SettingsManager().settings
    setup_logger(settings.log_level, settings.logging)

    if args.command == "worker":
        return run_worker(args, settings)
    if args.command == "migrate":
        run_migrations(settings.database.host)
        return 0
    if args.command == "purge-notifications":
        return purge_notifications(args, settings)
    if args.command == "clean-logs":
        log_cleaner(settings.logging)
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
