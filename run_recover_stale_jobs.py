"""CLI utility to requeue or fail sync jobs whose workers stopped reporting."""

from __future__ import annotations

import argparse
import logging
import os
from datetime import timedelta

from syncqueue.config import create_storage, load_settings, STORAGE_CHOICES


def build_arg_parser() -> argparse.ArgumentParser:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Recover stale SyncQueue jobs")
    parser.add_argument(
        "--storage",
        choices=STORAGE_CHOICES,
        default=settings.storage,
        help="Storage backend to use (env: SYNCQUEUE_STORAGE).",
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="SQLAlchemy connection URL, e.g. postgresql+psycopg://... (env: SYNCQUEUE_DATABASE_URL)",
    )
    parser.add_argument(
        "--redis-url",
        default=settings.redis_url,
        help="Redis URL for the redis backend (env: SYNCQUEUE_REDIS_URL).",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=settings.stale_timeout_seconds,
        help="Treat jobs running longer than this many seconds as stale (env: SYNCQUEUE_STALE_TIMEOUT_SECONDS).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of jobs to recover.",
    )
    parser.add_argument("--log-level", default=os.getenv("SYNCQUEUE_LOG_LEVEL", "INFO"))
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper())

    settings = load_settings()
    settings.storage = args.storage
    settings.database_url = args.database_url
    settings.redis_url = args.redis_url
    storage = create_storage(settings)

    recovered = storage.recover_stale_jobs(
        timedelta(seconds=args.timeout_seconds),
        limit=args.limit,
    )
    if not recovered:
        print("No stale jobs recovered.")
    else:
        print(f"Recovered {recovered} stale jobs.")
    return recovered


if __name__ == "__main__":
    main()
