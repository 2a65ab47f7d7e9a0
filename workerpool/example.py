"""
A small application built on the Supervisor.

`ExampleApplication` registers a number of identical `run_worker` children.
Each child runs a `SomeWorker` that ticks until it is told to stop through
`handle_signal`. Both functions live at module level so they also work with
the 'spawn' start method.
"""
import os
import time
import logging
from typing import Optional

from workerpool.supervisor import Supervisor

log = logging.getLogger(__name__)

# The worker owned by the current worker process.
_worker: Optional["SomeWorker"] = None


class SomeWorker:
    """Does its work in small steps until `keep_working` is cleared."""

    def __init__(self, tick: float = 0.5) -> None:
        self.tick = tick
        self.keep_working = True
        self.iterations = 0

    def do_work(self) -> None:
        log.info(f"Worker {os.getpid()} started")
        while self.keep_working:
            self.iterations += 1
            time.sleep(self.tick)
        log.info(f"Worker {os.getpid()} finished after {self.iterations} iterations")


def run_worker(tick: float = 0.5) -> None:
    """Entry point of each child process."""
    global _worker
    _worker = SomeWorker(tick)
    _worker.do_work()


def handle_signal(signum: int) -> None:
    """Worker signal handler: finish the current step, then exit."""
    log.debug(f"Worker {os.getpid()} received signal {signum}")
    if _worker is not None:
        _worker.keep_working = False
    else:
        raise SystemExit(0)


class ExampleApplication:
    def __init__(self, startup_splay: float = 0.0, **options) -> None:
        self.logger = logging.getLogger("workerpool.app")
        self.super = Supervisor.for_application(self, startup_splay, **options)

    def start_workers(self, count: int, max_run_time: float = 0.0, tick: float = 0.5) -> None:
        """Registers `count` workers and blocks until the pool is stopped."""
        for _ in range(count):
            self.super.add_child(run_worker, (tick,), max_run_time)
        self.super.wait()

    def monitor(self) -> None:
        # Application policy goes here: call self.super.stop() or self.super.restart() when needed.
        pass

    def log(self, message: str) -> None:
        self.logger.info(message)

    @staticmethod
    def handle_signal(signum: int) -> None:
        handle_signal(signum)
