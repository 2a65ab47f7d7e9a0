import os
import sys
import json
import time
import psutil
import logging
import importlib
import inspect
import threading
import subprocess
from typing import TYPE_CHECKING, Any, Callable, Dict, List, NoReturn, Optional, Tuple

from . import deadlines, signals
from .models import ChildProcess, ChildState, WorkerSpec

if TYPE_CHECKING:
    from .supervisor import Supervisor

log = logging.getLogger(__name__)

WORKER_MODULE = "workerpool.entry.worker"
START_METHODS = ("fork", "spawn")


class LaunchError(Exception):
    """Raised when the OS refuses to create a worker process."""
    pass


def default_start_method() -> str:
    """Returns 'fork' where the platform supports it, otherwise 'spawn'."""
    return "fork" if hasattr(os, "fork") else "spawn"


def worker_title(prefix: Optional[str], spec_id: int) -> Optional[str]:
    """Returns the process title for a worker of the given spec, if titles are enabled."""
    if not prefix:
        return None
    return f"{prefix} - Worker #{spec_id}"


#* --- Callable references (spawn mode) ---
def callable_reference(func: Callable[..., Any]) -> str:
    """
    Returns a 'module:qualname' reference a fresh interpreter can import.

    :raises ValueError: If the callable cannot be re-imported by name
        (lambdas, closures, bound methods, objects without a module).
    """
    if inspect.ismethod(func):
        raise ValueError(f"Bound method {func!r} cannot be referenced from a spawned worker")
    module = getattr(func, "__module__", None)
    qualname = getattr(func, "__qualname__", None)
    if not module or not qualname or "<" in qualname:
        raise ValueError(f"{func!r} is not importable by name; use a module-level function")
    if module == "__main__":
        main_spec = getattr(sys.modules.get("__main__"), "__spec__", None)
        if main_spec is None:
            raise ValueError(f"{func!r} lives in a __main__ script that a spawned worker cannot import")
        module = main_spec.name
    return f"{module}:{qualname}"


def resolve_reference(reference: str) -> Callable[..., Any]:
    """Imports the object named by a 'module:qualname' reference."""
    module_name, _, qualname = reference.partition(":")
    if not module_name or not qualname:
        raise ValueError(f"Malformed callable reference '{reference}'")
    obj: Any = importlib.import_module(module_name)
    for attr in qualname.split("."):
        obj = getattr(obj, attr)
    return obj


#* --- Process output ---
def get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NO_WINDOW}
    return {}


def _read_pipe(pipe, process_name: str, level: int) -> None:
    """Target function for reader threads. Reads and logs lines from a worker pipe."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            proc_logger.log(level, line)
    except Exception as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()


def log_process_output(process: subprocess.Popen, name: str) -> None:
    """Starts background threads to consume and log a worker's stdout/stderr."""
    if process.stdout:
        threading.Thread(target=_read_pipe, args=(process.stdout, name, logging.INFO), daemon=True).start()
    if process.stderr:
        threading.Thread(target=_read_pipe, args=(process.stderr, name, logging.ERROR), daemon=True).start()


#* --- Process creation ---
def _process_handle(pid: int) -> Optional[psutil.Process]:
    try:
        return psutil.Process(pid)
    except psutil.Error as e:
        log.debug(f"No process handle for PID {pid}: {e}")
        return None


def _record_child(
    pid: int,
    spec: WorkerSpec,
    popen: Optional[subprocess.Popen] = None,
) -> ChildProcess:
    now = time.monotonic()
    child = ChildProcess(
        pid=pid,
        spec_id=spec.id,
        start_time=now,
        handle=_process_handle(pid),
        popen=popen,
    )
    if spec.max_run_time > 0:
        deadlines.arm_deadline(child, spec.max_run_time, now)
    child.state = ChildState.RUNNING
    return child


def _exit_code(code: Any) -> int:
    """Maps a SystemExit code to a process exit status the way the interpreter does."""
    if code is None:
        return 0
    if isinstance(code, int):
        return code
    print(code, file=sys.stderr)
    return 1


def _run_forked_child(supervisor: "Supervisor", spec: WorkerSpec, saved_mask) -> NoReturn:
    """Runs the spec's entry point in the forked child and exits. Never returns."""
    code = 1
    try:
        supervisor._become_worker(spec)
        signals.install_in_worker(supervisor)
        signals.restore_mask(saved_mask)
        spec.entry_point(*spec.args)
        code = 0
    except SystemExit as e:
        code = _exit_code(e.code)
    except BaseException:
        log.exception(f"Worker for spec #{spec.id} failed")
        code = 1
    finally:
        for stream in (sys.stdout, sys.stderr):
            try:
                if stream is not None:
                    stream.flush()
            except (OSError, ValueError):
                pass
        os._exit(code)


def _fork_child(supervisor: "Supervisor", spec: WorkerSpec) -> ChildProcess:
    # Routed signals stay blocked until the child knows it is a worker.
    saved_mask = signals.block_routed_signals()
    try:
        pid = os.fork()
    except OSError as e:
        signals.restore_mask(saved_mask)
        raise LaunchError(f"Failed to fork: {e}") from e

    if pid == 0:
        _run_forked_child(supervisor, spec, saved_mask)

    signals.restore_mask(saved_mask)
    return _record_child(pid, spec)


def build_spawn_command(supervisor: "Supervisor", spec: WorkerSpec) -> List[str]:
    """
    Returns the command line that re-enters a fresh interpreter as a worker.

    :raises ValueError: If the entry point or signal handler cannot be referenced by name.
    :raises TypeError: If the spec's arguments are not JSON serializable.
    """
    payload = {
        "spec_id": spec.id,
        "entry_point": callable_reference(spec.entry_point),
        "args": list(spec.args),
        "signal_handler": callable_reference(supervisor.worker_signal_handler),
        "title": worker_title(supervisor.proc_title, spec.id),
    }
    return [supervisor.python_executable, "-m", WORKER_MODULE, json.dumps(payload)]


def _spawn_child(supervisor: "Supervisor", spec: WorkerSpec) -> ChildProcess:
    try:
        args = build_spawn_command(supervisor, spec)
    except (TypeError, ValueError) as e:
        raise LaunchError(f"Cannot serialize worker spec #{spec.id}: {e}") from e

    popen_kwargs = get_popen_creation_flags()
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    if supervisor.capture_output:
        popen_kwargs.update(stdout=subprocess.PIPE, stderr=subprocess.PIPE)

    try:
        p = subprocess.Popen(args, stdin=subprocess.DEVNULL, **popen_kwargs)
    except OSError as e:
        raise LaunchError(f"Failed to spawn worker for spec #{spec.id}: {e}") from e

    if supervisor.capture_output:
        log_process_output(p, f"worker-{spec.id}")
    return _record_child(p.pid, spec, popen=p)


def start_child(supervisor: "Supervisor", spec: WorkerSpec) -> ChildProcess:
    """
    Creates a new OS process running the spec's entry point.

    In a forked child this function never returns: the child exits when the
    entry point returns. In the supervisor it returns the new child's record,
    with its max-run-time deadline armed when the spec has one.

    :raises LaunchError: If the process could not be created.
    """
    if supervisor.start_method == "fork":
        return _fork_child(supervisor, spec)
    return _spawn_child(supervisor, spec)


#* --- Process status & signalling ---
def poll_exit(child: ChildProcess) -> Tuple[bool, Optional[int]]:
    """
    Checks, without blocking, whether a child has exited.

    :return tuple: (exited, exit code). The exit code is negative when the child
        was ended by a signal, and None when it could not be determined.
    """
    if child.popen is not None:
        code = child.popen.poll()
        return code is not None, code

    try:
        pid, status = os.waitpid(child.pid, os.WNOHANG)
    except ChildProcessError:
        # Already reaped elsewhere.
        return True, None
    if pid == 0:
        return False, None
    return True, os.waitstatus_to_exitcode(status)


def signal_child(child: ChildProcess, signum: int) -> bool:
    """
    Sends a signal to a child.

    A child that has already gone away is a benign race, not an error.

    :return bool: True if the signal was delivered.
    """
    try:
        if child.handle is not None:
            if signum == signals.KILL_SIGNAL:
                child.handle.kill()
            else:
                child.handle.send_signal(signum)
        else:
            os.kill(child.pid, signum)
        return True
    except (psutil.NoSuchProcess, ProcessLookupError):
        log.debug(f"Child {child.pid} no longer exists, skipping signal {signum}.")
    except psutil.AccessDenied:
        log.warning(f"Not permitted to signal child {child.pid}.")
    return False
