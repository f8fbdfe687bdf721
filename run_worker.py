"""Run the application's worker pools in a standalone process."""

from __future__ import annotations

import argparse
import logging
import signal
import threading

from jobdispatch.config import Settings, configure
from jobdispatch.execution.performer import load_processor
from jobdispatch.lifecycle import create_dispatcher

logger = logging.getLogger("jobdispatch.run_worker")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run jobdispatch worker pools")
    parser.add_argument(
        "--plagiarism-check",
        default=None,
        help="Dotted path of the originality check function "
        "(e.g., myapp.plagiarism:check_submission). "
        "The plagiarism-check queue is only consumed when given.",
    )
    parser.add_argument(
        "--on-plagiarism-failed",
        default=None,
        help="Dotted path of a callback(submission_id, error) for exhausted checks.",
    )
    parser.add_argument(
        "--stop-timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for in-flight jobs on shutdown.",
    )
    parser.add_argument("--log-level", default="INFO")
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    settings = Settings.from_env()
    configure(settings)
    dispatcher = create_dispatcher(
        settings,
        plagiarism_check=load_processor(args.plagiarism_check) if args.plagiarism_check else None,
        on_plagiarism_failed=(
            load_processor(args.on_plagiarism_failed) if args.on_plagiarism_failed else None
        ),
    )

    stop_requested = threading.Event()

    def _request_stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_requested.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    if not dispatcher.start():
        logger.error("Broker not available; exiting.")
        raise SystemExit(1)

    stop_requested.wait()
    drained = dispatcher.stop(args.stop_timeout)
    if not drained:
        logger.warning("Some jobs were still running at shutdown.")


if __name__ == "__main__":
    main()
