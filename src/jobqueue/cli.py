"""
CLI entry point for the job queue engine.
"""

import argparse
import importlib
import inspect
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from src.infra.logging_config import setup_logging
from src.infra.webhook import WebhookBroadcaster, WebhookPublisher

from .config import EngineConfig
from .entities import JobStatus
from .handlers import HandlerRegistry, JobHandler
from .metrics import MetricsAggregator
from .persistence import PersistenceAdapter
from .service import JobQueueService


EXIT_SUCCESS = 0
EXIT_INVALID_INPUT = 2

logger = logging.getLogger(__name__)


def load_handler(entry: str) -> tuple[str, object]:
    """
    Resolve a TYPE=module:attribute handler argument.

    The attribute may be a JobHandler instance, a JobHandler subclass
    (instantiated without arguments) or a plain callable taking the payload.

    Raises:
        ValueError: If the argument is malformed or the attribute is missing
    """
    job_type, sep, target = entry.partition("=")
    module_name, sep2, attr = target.partition(":")
    if not sep or not sep2 or not job_type or not module_name or not attr:
        raise ValueError(f"Expected TYPE=module:attribute, got '{entry}'")

    try:
        module = importlib.import_module(module_name)
        handler = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"Cannot load handler '{target}': {e}") from e

    if inspect.isclass(handler) and issubclass(handler, JobHandler):
        handler = handler()
    return job_type, handler


def build_registry(handler_entries: List[str]) -> HandlerRegistry:
    registry = HandlerRegistry()
    for entry in handler_entries:
        job_type, handler = load_handler(entry)
        registry.register(job_type, handler)
    return registry


def load_config(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig.from_env(
        db_path=args.db,
        log_level=args.log_level,
        worker_pool_size=getattr(args, "workers", None),
    )


def cmd_run(args: argparse.Namespace) -> int:
    """
    Run the engine until SIGINT/SIGTERM.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    config = load_config(args)
    setup_logging(config.log_level, config.log_dir)

    try:
        registry = build_registry(args.handler)
    except ValueError as e:
        logger.error(f"Invalid handler: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    publisher = None
    broadcaster = None
    if config.webhook_url:
        publisher = WebhookPublisher(config.webhook_url)
        broadcaster = WebhookBroadcaster(f"{config.webhook_url.rstrip('/')}/broadcast")

    service = JobQueueService.create(
        config, registry, publisher=publisher, broadcaster=broadcaster
    )

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    service.start()
    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    finally:
        service.stop()

    return EXIT_SUCCESS


def cmd_stats(args: argparse.Namespace) -> int:
    """Print a metrics snapshot computed from the database."""
    config = load_config(args)

    metrics = MetricsAggregator()
    metrics.reconcile(PersistenceAdapter(config.db_path))
    print(json.dumps(metrics.snapshot().model_dump(), indent=2))
    return EXIT_SUCCESS


def cmd_list(args: argparse.Namespace) -> int:
    """Print jobs in a status, in dispatch order."""
    config = load_config(args)

    store = PersistenceAdapter(config.db_path)
    jobs = store.list_jobs_by_status(JobStatus(args.status), limit=args.limit)
    for job in jobs:
        print(json.dumps(job.to_dict()))
    return EXIT_SUCCESS


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="jobqueue",
        description="Job queue engine - priority dispatch, retries, scheduled and recurring jobs",
    )
    parser.add_argument(
        "--db",
        help="SQLite database path (default: JOBQUEUE_DB_PATH or data/jobqueue.db)"
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (default: JOBQUEUE_LOG_LEVEL or INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run the engine loops")
    run_parser.add_argument(
        "--handler",
        action="append",
        default=[],
        metavar="TYPE=module:attr",
        help="Register a handler for a job type (repeatable)"
    )
    run_parser.add_argument(
        "-w", "--workers",
        type=int,
        help="Worker pool size (default: JOBQUEUE_WORKER_POOL_SIZE or 4)"
    )

    # stats command
    subparsers.add_parser("stats", help="Print current metrics")

    # list command
    list_parser = subparsers.add_parser("list", help="List jobs by status")
    list_parser.add_argument(
        "status",
        choices=[status.value for status in JobStatus],
        help="Status to list"
    )
    list_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Maximum jobs to show (default: 20)"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "stats":
        return cmd_stats(args)
    elif args.command == "list":
        return cmd_list(args)
    else:
        parser.print_help()
        return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
