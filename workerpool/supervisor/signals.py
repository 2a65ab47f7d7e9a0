"""
Routing of OS signals.

The handler installed by `install` runs in both the supervisor and every
forked worker, since a fork inherits it:

- In the supervisor it only queues the signal number; `dispatch` acts on it
  from the supervision loop on its next tick.
- In a worker it forwards the signal verbatim to the application's worker
  signal handler. The supervisor's stop/restart logic never runs there.
"""
import signal
import logging
import threading
import functools
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .supervisor import Supervisor

log = logging.getLogger(__name__)

STOP_SIGNALS: List[int] = [signal.SIGINT, signal.SIGTERM]
RESTART_SIGNALS: List[int] = [signal.SIGHUP] if hasattr(signal, "SIGHUP") else []
ROUTED_SIGNALS: List[int] = STOP_SIGNALS + RESTART_SIGNALS
KILL_SIGNAL: int = getattr(signal, "SIGKILL", signal.SIGTERM)


def handle_signal(supervisor: "Supervisor", signum: int, frame: Any = None) -> None:
    """Signal handler installed for every routed signal."""
    if supervisor.is_parent:
        supervisor._enqueue_signal(signum)
    else:
        supervisor.worker_signal_handler(signum)


def install(supervisor: "Supervisor") -> Dict[int, Any]:
    """
    Registers the routed signal handlers.

    Signal handlers can only be set from the main thread; elsewhere nothing is
    installed and the supervisor is controlled through its request methods.

    :return dict: The previous handlers, keyed by signal number.
    """
    if threading.current_thread() is not threading.main_thread():
        log.warning("Supervisor is not running on the main thread; OS signals will not be routed.")
        return {}

    supervisor._log("Registering signals for parent")
    handler = functools.partial(handle_signal, supervisor)
    previous = {}
    for signum in ROUTED_SIGNALS:
        previous[signum] = signal.signal(signum, handler)
    return previous


def install_in_worker(supervisor: "Supervisor") -> None:
    """
    Registers the routed signal handlers inside a freshly forked worker.

    The thread that forked is the worker's main thread, so this works even
    when the supervisor itself is not running on its main thread.
    """
    handler = functools.partial(handle_signal, supervisor)
    for signum in ROUTED_SIGNALS:
        signal.signal(signum, handler)


def restore(previous: Dict[int, Any]) -> None:
    """Puts back the handlers returned by `install`."""
    for signum, handler in previous.items():
        signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


def block_routed_signals() -> Optional[Any]:
    """Blocks routed signals for the calling thread, returning the previous mask."""
    if not hasattr(signal, "pthread_sigmask"):
        return None
    return signal.pthread_sigmask(signal.SIG_BLOCK, ROUTED_SIGNALS)


def restore_mask(saved_mask: Optional[Any]) -> None:
    if saved_mask is None or not hasattr(signal, "pthread_sigmask"):
        return
    signal.pthread_sigmask(signal.SIG_SETMASK, saved_mask)


def dispatch(supervisor: "Supervisor", signum: int) -> None:
    """
    Applies a signal received by the supervisor.

    Interrupt and terminate request a graceful stop. Each repeat while the
    shutdown is still pending counts toward the escalation threshold; once it
    is reached every child is killed outright. Hangup requests a restart.
    """
    if signum in STOP_SIGNALS:
        supervisor._log("Shutting down...")
        supervisor.term_signal_count += 1
        if supervisor.term_signal_count < supervisor.escalation_threshold:
            supervisor.stop()
        else:
            supervisor._log(
                f"Received {supervisor.term_signal_count} stop signals. Killing all children."
            )
            supervisor.stop()
            supervisor.kill_children()
    elif signum in RESTART_SIGNALS:
        supervisor.restart()
    else:
        log.debug(f"Ignoring unrouted signal {signum}")
