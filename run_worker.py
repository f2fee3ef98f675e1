"""Runs a SyncQueue worker against the configured store."""
from __future__ import annotations

import argparse
import logging
import os
import signal

from syncqueue.config import create_storage, load_settings, STORAGE_CHOICES
from syncqueue.execution.performer import HandlerRegistry
from syncqueue.server.worker import Worker


def parse_handler(value: str) -> tuple[str, str]:
    job_type, sep, path = value.partition("=")
    if not sep or not job_type or not path:
        raise argparse.ArgumentTypeError(
            f"handler must look like TYPE=package.module:function, got {value!r}"
        )
    return job_type, path


def build_arg_parser() -> argparse.ArgumentParser:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Run a SyncQueue worker")
    parser.add_argument(
        "--storage",
        choices=STORAGE_CHOICES,
        default=settings.storage,
        help="Storage backend to use (env: SYNCQUEUE_STORAGE).",
    )
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--redis-url", default=settings.redis_url)
    parser.add_argument(
        "--handler",
        dest="handlers",
        action="append",
        type=parse_handler,
        default=[],
        metavar="TYPE=MODULE:FUNCTION",
        help="Handler for a job type; repeat for each type (e.g. court=myapp.sync:sync_courts).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=settings.poll_interval_seconds,
        help="Seconds to wait when no job is eligible (env: SYNCQUEUE_POLL_INTERVAL_SECONDS).",
    )
    parser.add_argument(
        "--stale-timeout",
        type=float,
        default=settings.stale_timeout_seconds,
        help="Recover jobs running longer than this; 0 disables recovery (env: SYNCQUEUE_STALE_TIMEOUT_SECONDS).",
    )
    parser.add_argument("--log-level", default=os.getenv("SYNCQUEUE_LOG_LEVEL", "INFO"))
    return parser


def build_worker(args: argparse.Namespace) -> Worker:
    settings = load_settings()
    settings.storage = args.storage
    settings.database_url = args.database_url
    settings.redis_url = args.redis_url

    registry = HandlerRegistry()
    for job_type, path in args.handlers:
        registry.register_path(job_type, path)

    return Worker(
        create_storage(settings),
        registry,
        poll_interval_seconds=args.poll_interval,
        stale_timeout_seconds=args.stale_timeout or None,
    )


def main(argv: list[str] | None = None) -> None:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    worker = build_worker(args)
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda signum, frame: worker.stop())
    worker.run()


if __name__ == "__main__":
    main()
