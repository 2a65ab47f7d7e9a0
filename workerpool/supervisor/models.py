"""
Records shared by the registry, the launcher, the kill scheduler and the
supervision loop.

A `WorkerSpec` is a template registered before supervision starts and never
changes afterwards. A `ChildProcess` is one live OS process created from a
spec; the supervision loop owns every `ChildProcess` and is the only code that
mutates them.
"""
import subprocess
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

import psutil


class ChildState(Enum):
    """
    Lifecycle of a supervised child.

    STARTING -> RUNNING -> EXITED -------------> REMOVED
                   |                                ^
                   +-> TERMINATING -> KILLED -------+
                   |        |                       |
                   |        +-----------------------+
                   +-> KILLED (max run time reached)
    """
    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"
    KILLED = "killed"
    EXITED = "exited"
    REMOVED = "removed"


@dataclass(frozen=True)
class WorkerSpec:
    """
    Template for one worker slot.

    Attributes:
        id: Stable identifier assigned at registration
        entry_point: Callable run inside the child process
        args: Positional arguments passed to the entry point
        max_run_time: Seconds a child may run before it is killed (0 = unlimited)
    """
    id: int
    entry_point: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    max_run_time: float = 0.0

    def __post_init__(self):
        if not callable(self.entry_point):
            raise TypeError(f"Entry point {self.entry_point!r} is not callable")
        if isinstance(self.max_run_time, bool) or not isinstance(self.max_run_time, (int, float)):
            raise ValueError(f"max_run_time must be a number of seconds, got {self.max_run_time!r}")
        if self.max_run_time < 0:
            raise ValueError(f"max_run_time cannot be negative, got {self.max_run_time}")


@dataclass
class ChildProcess:
    """One running worker instance."""
    pid: int
    spec_id: int
    start_time: float
    kill_deadline: Optional[float] = None
    # End of the grace period once a graceful termination was requested.
    grace_deadline: Optional[float] = None
    state: ChildState = ChildState.STARTING
    exit_code: Optional[int] = None
    handle: Optional[psutil.Process] = field(default=None, repr=False, compare=False)
    popen: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    def running_time(self, now: float) -> float:
        return now - self.start_time
