"""Process-pool supervision: keep one worker process alive per registered spec."""

from .supervisor import (
    ChildProcess,
    ChildState,
    LaunchError,
    Supervisor,
    WorkerRegistry,
    WorkerSpec,
)

__all__ = [
    "ChildProcess",
    "ChildState",
    "LaunchError",
    "Supervisor",
    "WorkerRegistry",
    "WorkerSpec",
]
