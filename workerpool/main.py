import sys
import logging
import argparse
from typing import List, Optional

import setproctitle

from workerpool.config import effective_settings as config
from workerpool.example import ExampleApplication
from workerpool.log import setup_logging

log = logging.getLogger("console")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="workerpool", description="Run a supervised pool of example workers.")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start the pool and supervise it until stopped (Ctrl+C, SIGTERM).")
    run.add_argument("-n", "--workers", type=int, default=4, help="Number of workers to keep alive.")
    run.add_argument("--max-run-time", type=float, default=config.MAX_RUN_TIME,
                     help="Seconds a worker may run before it is killed (0 = unlimited).")
    run.add_argument("--splay", type=float, default=config.STARTUP_SPLAY,
                     help="Seconds between successive worker starts and restarts.")
    run.add_argument("--grace-period", type=float, default=config.GRACE_PERIOD,
                     help="Seconds a worker may take to exit after SIGTERM.")
    run.add_argument("--tick", type=float, default=0.5, help="Seconds per unit of example work.")
    run.add_argument("--spawn", action="store_true", help="Start workers as fresh interpreters instead of forking.")
    run.add_argument("--verbose", action="store_true", default=config.VERBOSE_LOGGING, help="Log at DEBUG level.")
    return parser


def run_pool(args: argparse.Namespace) -> int:
    setproctitle.setproctitle(f"{config.PROC_TITLE} - Supervisor")
    app = ExampleApplication(
        args.splay,
        grace_period=args.grace_period,
        idle_interval=config.IDLE_INTERVAL,
        escalation_threshold=config.ESCALATION_THRESHOLD,
        start_method="spawn" if args.spawn else config.START_METHOD,
        proc_title=config.PROC_TITLE,
        capture_output=config.CAPTURE_WORKER_OUTPUT,
        python_executable=config.PYTHON_EXECUTABLE,
    )
    log.info(f"Starting {args.workers} workers")
    app.start_workers(args.workers, args.max_run_time, args.tick)
    log.info("All workers stopped")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the console application."""
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    if args.workers < 1:
        log.error("At least one worker is required.")
        return 2

    try:
        return run_pool(args)
    except ValueError as e:
        log.error(f"Invalid configuration: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
