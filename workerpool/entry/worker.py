"""
Entry point for workers created with the 'spawn' start method.

The supervisor runs `python -m workerpool.entry.worker <payload>` where the
payload is a JSON object naming the worker's entry point and signal handler
by 'module:qualname' reference, together with the entry point's arguments.
The worker routes signals to its handler, runs the entry point and exits
when it returns.
"""
import sys
import json
import signal
import logging
import setproctitle
from typing import List, Optional

from workerpool.supervisor.launcher import resolve_reference
from workerpool.supervisor.signals import ROUTED_SIGNALS

log = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print("usage: python -m workerpool.entry.worker <payload>", file=sys.stderr)
        return 2

    payload = json.loads(argv[0])
    if payload.get("title"):
        setproctitle.setproctitle(payload["title"])

    entry_point = resolve_reference(payload["entry_point"])
    signal_handler = resolve_reference(payload["signal_handler"])

    def handle_signal(signum, frame):
        signal_handler(signum)

    for signum in ROUTED_SIGNALS:
        signal.signal(signum, handle_signal)

    log.debug(f"Worker for spec #{payload.get('spec_id')} starting {payload['entry_point']}")
    entry_point(*payload.get("args", []))
    return 0


if __name__ == "__main__":
    sys.exit(main())
