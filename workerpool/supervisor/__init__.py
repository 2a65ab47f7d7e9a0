"""
The Supervisor package.
Keeps a pool of worker processes alive.

This package contains the central Supervisor class and its helper modules,
which together handle registering worker specs, creating and reaping child
processes, routing OS signals and enforcing kill deadlines.
"""
from .launcher import LaunchError
from .models import ChildProcess, ChildState, WorkerSpec
from .registry import WorkerRegistry
from .supervisor import Supervisor

__all__ = [
    "ChildProcess",
    "ChildState",
    "LaunchError",
    "Supervisor",
    "WorkerRegistry",
    "WorkerSpec",
]
