import os
import sys
import signal
import time
import logging
import setproctitle
from enum import Enum
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Sequence, Tuple

from . import deadlines, launcher, signals
from .launcher import LaunchError
from .models import ChildProcess, ChildState, WorkerSpec
from .registry import WorkerRegistry

log = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 60.0
DEFAULT_IDLE_INTERVAL = 0.05
DEFAULT_ESCALATION_THRESHOLD = 5
KILL_RETRY_INTERVAL = 1.0


class Command(Enum):
    """Requests queued for the supervision loop from outside its own thread of control."""
    SIGNAL = "signal"
    STOP = "stop"
    RESTART = "restart"


class Supervisor:
    """
    Keeps one worker process alive per registered spec.

    Workers that exit are replaced, workers that outlive their max run time are
    killed, and the owning application can request a graceful stop or a
    (optionally staggered) restart of the whole pool. The only hooks into the
    calling code are the three callbacks given to the constructor.
    """

    def __init__(
        self,
        monitor: Callable[[], Any],
        log: Callable[[str], Any],
        worker_signal_handler: Callable[[int], Any],
        startup_splay: float = 0.0,
        *,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        idle_interval: float = DEFAULT_IDLE_INTERVAL,
        escalation_threshold: int = DEFAULT_ESCALATION_THRESHOLD,
        start_method: Optional[str] = None,
        proc_title: Optional[str] = None,
        capture_output: bool = False,
        python_executable: Optional[str] = None,
    ) -> None:
        """
        :param monitor: Called once per loop iteration. It may call `stop()` or
            `restart()`. It is called very often; keep it cheap.
        :param log: Receives every diagnostic message as a string.
        :param worker_signal_handler: Called inside a worker process when it
            receives a routed signal. Workers must handle signals themselves.
        :param startup_splay: Seconds to wait between starting workers at startup
            and between terminating workers during a restart. 0 disables it.
        :param grace_period: Seconds a child may take to exit after a graceful
            termination signal before it is killed.
        :param idle_interval: Seconds the loop sleeps on each iteration.
        :param escalation_threshold: Number of stop signals after which all
            children are killed instead of waiting for them to exit.
        :param start_method: 'fork' or 'spawn'. Defaults to 'fork' where available.
        :param proc_title: Prefix for worker process titles, or None to leave them.
        :param capture_output: Log the workers' stdout/stderr. Spawn mode only;
            forked workers share the supervisor's streams.
        :param python_executable: Interpreter used in spawn mode.
        """
        for name, callback in (("monitor", monitor), ("log", log), ("worker_signal_handler", worker_signal_handler)):
            if not callable(callback):
                raise TypeError(f"{name} must be callable, got {callback!r}")
        if startup_splay < 0 or grace_period < 0:
            raise ValueError("startup_splay and grace_period cannot be negative")
        if idle_interval <= 0:
            raise ValueError("idle_interval must be positive")
        if escalation_threshold < 1:
            raise ValueError("escalation_threshold must be at least 1")

        start_method = start_method or launcher.default_start_method()
        if start_method not in launcher.START_METHODS:
            raise ValueError(f"Unknown start method '{start_method}'. Use one of {launcher.START_METHODS}.")
        if start_method == "fork" and not hasattr(os, "fork"):
            raise ValueError("The 'fork' start method is not available on this platform")
        if capture_output and start_method != "spawn":
            raise ValueError("capture_output requires the 'spawn' start method")
        if start_method == "spawn":
            launcher.callable_reference(worker_signal_handler)

        self.monitor_callback = monitor
        self.log_callback = log
        self.worker_signal_handler = worker_signal_handler
        self.startup_splay = float(startup_splay)
        self.grace_period = float(grace_period)
        self.idle_interval = float(idle_interval)
        self.escalation_threshold = escalation_threshold
        self.start_method = start_method
        self.proc_title = proc_title
        self.capture_output = capture_output
        self.python_executable = python_executable or sys.executable

        self.registry = WorkerRegistry()
        self.children: Dict[int, ChildProcess] = {}
        self.stop_requested = False
        self.restart_requested = False
        self.is_parent = True
        self.next_check_time: Optional[float] = None
        self.term_signal_count = 0
        self.start_queue: Deque[int] = deque()
        self.restart_queue: Deque[int] = deque()

        self._control: Deque[Tuple[Command, Optional[int]]] = deque()
        self._last_start_time: Optional[float] = None
        self._last_kill_time: Optional[float] = None
        self._running = False
        self._completed = False

    @classmethod
    def for_application(cls, app: Any, startup_splay: float = 0.0, **options: Any) -> "Supervisor":
        """Builds a supervisor wired to an object exposing `monitor`, `log` and `handle_signal`."""
        return cls(app.monitor, app.log, app.handle_signal, startup_splay, **options)

    #* --- Registration ---
    def add_child(
        self,
        entry_point: Callable[..., Any],
        args: Sequence[Any] = (),
        max_run_time: float = 0.0,
    ) -> int:
        """
        Registers a worker to be started when `wait` runs.

        There is no check for duplicates; adding the same entry point many times
        is how a pool of identical workers is built.

        :param entry_point: Callable run by the child after it is created.
        :param args: Positional arguments for the entry point.
        :param max_run_time: Seconds the child may run before it is killed
            outright. This is not a restart; use it only to stop runaway
            processes. Workers that should retire after a while should exit
            on their own. 0 means unlimited.
        :return int: The id of the new spec.
        """
        if self._running:
            raise RuntimeError("Cannot add children while the supervisor is running")
        if self.start_method == "spawn":
            launcher.callable_reference(entry_point)
        return self.registry.register(entry_point, args, max_run_time)

    #* --- Control surface ---
    def stop(self) -> None:
        """
        Stops every child and lets `wait` return once they have all exited.

        Each child gets a graceful termination signal and is killed if it is
        still alive after the grace period. Calling this again does nothing.
        """
        if self.stop_requested:
            return
        self.stop_requested = True
        self.restart_requested = False
        self.start_queue.clear()
        self.restart_queue.clear()
        self._log("Stopping children")
        self.terminate_children()

    def restart(self) -> None:
        """Replaces every running child. Ignored once a stop is in progress."""
        if self.stop_requested:
            return
        self._log("Restarting children")
        self.restart_requested = True

    def request_stop(self) -> None:
        """Thread-safe `stop()`: applied by the loop on its next iteration."""
        self._control.append((Command.STOP, None))

    def request_restart(self) -> None:
        """Thread-safe `restart()`: applied by the loop on its next iteration."""
        self._control.append((Command.RESTART, None))

    def terminate_children(self, signum: int = signal.SIGTERM) -> None:
        for pid in list(self.children):
            self.terminate_child(pid, signum)

    def kill_children(self) -> None:
        """Kills every live child unconditionally."""
        for pid in list(self.children):
            self.kill_child(pid)

    def terminate_child(self, pid: int, signum: int = signal.SIGTERM) -> bool:
        """
        Sends a graceful termination signal to one child and arms its kill deadline.

        The deadline is armed once per termination attempt and forces an
        immediate deadline check on the next iteration.

        :return bool: False if the pid is not a live child.
        """
        child = self.children.get(pid)
        if child is None:
            return False

        self._log(f"Stopping child {pid}")
        launcher.signal_child(child, signum)
        if child.state is ChildState.RUNNING:
            now = time.monotonic()
            child.state = ChildState.TERMINATING
            child.grace_deadline = now + self.grace_period
            deadlines.arm_deadline(child, self.grace_period, now)
            self.next_check_time = now
        return True

    def kill_child(self, pid: int) -> bool:
        """
        Kills one child unconditionally.

        If the kill could not be delivered the child keeps a deadline
        `KILL_RETRY_INTERVAL` seconds away, so the next deadline check tries again.

        :return bool: False if the pid is not a live child or the kill failed.
        """
        child = self.children.get(pid)
        if child is None:
            return False
        if not launcher.signal_child(child, signals.KILL_SIGNAL):
            retry_at = time.monotonic() + KILL_RETRY_INTERVAL
            child.kill_deadline = retry_at
            self.next_check_time = deadlines.lower_next_check(self.next_check_time, retry_at)
            self._log(f"Could not kill child {pid}. Retrying in {KILL_RETRY_INTERVAL:g}s.")
            return False
        child.state = ChildState.KILLED
        child.kill_deadline = None
        return True

    #* --- Main loop ---
    def wait(self) -> None:
        """
        Starts every registered child and supervises them.

        Blocks until a stop has been requested and no children remain. Call it
        after all children have been added. A supervisor runs once; build a new
        one to supervise again.
        """
        if self._running:
            raise RuntimeError("Supervisor is already running")
        if self._completed:
            raise RuntimeError("Supervisor has already run; create a new one to supervise again")
        self._running = True
        previous_handlers = signals.install(self)
        self.start_queue.extend(self.registry.ids())
        try:
            while not self.stop_requested or self.children:
                self._tick()
        finally:
            signals.restore(previous_handlers)
            self.start_queue.clear()
            self.restart_queue.clear()
            self._running = False
            self._completed = True

    def _tick(self) -> None:
        self._apply_control_requests()
        self._reap_children()
        self._drain_start_queue()

        time.sleep(self.idle_interval)

        if self.restart_requested:
            self.restart_queue = deque(self.children)
            self.restart_requested = False
        self._drain_restart_queue()

        if deadlines.is_due(self.next_check_time, time.monotonic()):
            self._check_deadlines()

        self._call_monitor()

    def _apply_control_requests(self) -> None:
        while self._control:
            command, signum = self._control.popleft()
            if command is Command.SIGNAL:
                signals.dispatch(self, signum)
            elif command is Command.STOP:
                self.stop()
            elif command is Command.RESTART:
                self.restart()

    def _reap_children(self) -> None:
        for pid, child in list(self.children.items()):
            exited, code = launcher.poll_exit(child)
            if not exited:
                continue

            self._log(f"Child {pid} exited with exit code {code}")
            if child.state in (ChildState.RUNNING, ChildState.STARTING):
                child.state = ChildState.EXITED
            child.exit_code = code
            del self.children[pid]
            child.state = ChildState.REMOVED

            if not self.stop_requested:
                self._start_child(child.spec_id)

    def _drain_start_queue(self) -> None:
        if not self.start_queue:
            return
        if self.startup_splay <= 0:
            while self.start_queue and not self.stop_requested:
                self._start_child(self.start_queue.popleft())
            return

        now = time.monotonic()
        if self._last_start_time is None or now - self._last_start_time >= self.startup_splay:
            self._start_child(self.start_queue.popleft())

    def _drain_restart_queue(self) -> None:
        if not self.restart_queue:
            return
        if self.startup_splay <= 0:
            while self.restart_queue:
                self.terminate_child(self.restart_queue.popleft())
            return

        now = time.monotonic()
        if self._last_kill_time is not None and now - self._last_kill_time < self.startup_splay:
            return
        # The child may have died already; skip to the next one still alive.
        while self.restart_queue:
            pid = self.restart_queue.popleft()
            if self.terminate_child(pid):
                self._last_kill_time = time.monotonic()
                break

    def _check_deadlines(self) -> None:
        now = time.monotonic()
        self._log("Checking children max run times")
        expired, self.next_check_time = deadlines.check_deadlines(self.children.values(), now)
        for child in expired:
            if child.grace_deadline is not None and child.grace_deadline <= now:
                self._log(f"Killing child {child.pid}. It did not exit within {self.grace_period:g}s.")
            else:
                self._log(f"Killing child {child.pid}. It has been running too long.")
            self.kill_child(child.pid)
        if self.next_check_time is not None:
            self._log(f"Setting next check time to {self.next_check_time - now:.3f}s from now")

    def _call_monitor(self) -> None:
        try:
            self.monitor_callback()
        except Exception as e:
            log.exception("Monitor callback raised an exception")
            self._log(f"Monitor callback failed: {e}. Stopping children.")
            self.stop()

    def _start_child(self, spec_id: int) -> Optional[ChildProcess]:
        spec: WorkerSpec = self.registry.get(spec_id)
        try:
            child = launcher.start_child(self, spec)
        except LaunchError as e:
            self._log(f"Failed to start child for spec #{spec_id}: {e}")
            self.stop()
            return None

        self.children[child.pid] = child
        self._last_start_time = child.start_time
        if child.kill_deadline is not None:
            self.next_check_time = deadlines.lower_next_check(self.next_check_time, child.kill_deadline)
            self._log(f"Setting next check time to {self.next_check_time - child.start_time:.3f}s from now")
        self._log(f"Child started with pid {child.pid} for spec #{spec_id}")
        return child

    #* --- Hooks used by the signal router and the launcher ---
    def _enqueue_signal(self, signum: int) -> None:
        self._control.append((Command.SIGNAL, signum))

    def _become_worker(self, spec: WorkerSpec) -> None:
        """Resets supervisor state inside a freshly forked worker."""
        self.is_parent = False
        self.children = {}
        self.start_queue.clear()
        self.restart_queue.clear()
        self._control.clear()
        self._running = False
        title = launcher.worker_title(self.proc_title, spec.id)
        if title:
            setproctitle.setproctitle(title)

    def _log(self, message: str) -> None:
        self.log_callback(message)

    @property
    def running(self) -> bool:
        return self._running

    def live_children(self, spec_id: Optional[int] = None) -> Dict[int, ChildProcess]:
        """Returns a snapshot of live children, optionally only those of one spec."""
        return {
            pid: child for pid, child in self.children.items()
            if spec_id is None or child.spec_id == spec_id
        }
