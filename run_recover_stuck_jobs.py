"""CLI utility to requeue jobs whose worker lease has gone stale."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace

from jobdispatch.broker import BrokerConnectionManager
from jobdispatch.config import Settings


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recover stuck jobdispatch jobs")
    parser.add_argument(
        "--backend",
        choices=["redis", "sql"],
        default=None,
        help="Broker backend (defaults to JOBDISPATCH_BACKEND).",
    )
    parser.add_argument(
        "--connection-url",
        default=None,
        help="Redis URL or SQLAlchemy URL (e.g., sqlite:///jobdispatch.db)",
    )
    parser.add_argument(
        "--max-age-seconds",
        type=int,
        default=None,
        help="Requeue jobs processing longer than this many seconds "
        "(defaults to jobs whose visibility timeout has expired).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of jobs to recover.",
    )
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    overrides = {}
    if args.backend:
        overrides["backend"] = args.backend
    backend = overrides.get("backend", settings.backend)
    if args.connection_url:
        key = "redis_url" if backend == "redis" else "sql_url"
        overrides[key] = args.connection_url
    return replace(settings, **overrides)


def main() -> None:
    args = build_arg_parser().parse_args()
    broker = BrokerConnectionManager(settings_from_args(args))
    if not broker.connect():
        print("Broker not available.", file=sys.stderr)
        sys.exit(1)
    try:
        recovered = broker.storage.recover_stuck_jobs(
            max_age_seconds=args.max_age_seconds,
            limit=args.limit,
        )
    finally:
        broker.close()
    if not recovered:
        print("No stuck jobs recovered.")
        return
    print(f"Recovered {len(recovered)} stuck jobs:")
    for job_id in recovered:
        print(f"- {job_id}")


if __name__ == "__main__":
    main()
