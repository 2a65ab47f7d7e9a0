"""Shared fixtures: a scripted stand-in for the OS process layer and a supervisor factory."""

from __future__ import annotations

import os
import signal
import time

import pytest

from workerpool.supervisor import launcher, deadlines
from workerpool.supervisor.launcher import LaunchError
from workerpool.supervisor.models import ChildProcess, ChildState
from workerpool.supervisor.signals import KILL_SIGNAL
from workerpool.supervisor.supervisor import Supervisor


class FakeProcesses:
    """
    Replaces process creation, exit polling and signal delivery.

    Children are plain records with made-up pids. A child "exits" when a test
    calls `exit()` or, depending on `obey_term`, when it is signalled.
    """

    def __init__(self):
        self.next_pid = 1000
        self.started: list[ChildProcess] = []
        self.signals: list[tuple[int, int, float]] = []
        self.exited: dict[int, int] = {}
        self.fail = False
        self.obey_term = True
        # Pids that signals cannot be delivered to.
        self.refuse: set[int] = set()

    def start_child(self, supervisor, spec):
        if self.fail:
            raise LaunchError("no more processes")
        pid = self.next_pid
        self.next_pid += 1
        now = time.monotonic()
        child = ChildProcess(pid=pid, spec_id=spec.id, start_time=now, state=ChildState.RUNNING)
        if spec.max_run_time > 0:
            deadlines.arm_deadline(child, spec.max_run_time, now)
        self.started.append(child)
        return child

    def poll_exit(self, child):
        if child.pid in self.exited:
            return True, self.exited.pop(child.pid)
        return False, None

    def signal_child(self, child, signum):
        self.signals.append((child.pid, signum, time.monotonic()))
        if child.pid in self.refuse:
            return False
        if signum == KILL_SIGNAL:
            self.exited[child.pid] = -9
        elif signum == signal.SIGTERM and self.obey_term:
            self.exited[child.pid] = 0
        return True

    def exit(self, pid, code=0):
        self.exited[pid] = code

    def signalled(self, signum):
        return [pid for pid, sig, _ in self.signals if sig == signum]


@pytest.fixture
def fake(monkeypatch):
    processes = FakeProcesses()
    monkeypatch.setattr(launcher, "start_child", processes.start_child)
    monkeypatch.setattr(launcher, "poll_exit", processes.poll_exit)
    monkeypatch.setattr(launcher, "signal_child", processes.signal_child)
    return processes


@pytest.fixture
def log_lines():
    return []


@pytest.fixture
def make_supervisor(log_lines):
    """Builds a supervisor whose log goes to `log_lines`; `monitor` defaults to a no-op."""
    def _make(monitor=None, worker_signal_handler=None, **options):
        options.setdefault("idle_interval", 0.005)
        options.setdefault("start_method", "fork" if hasattr(os, "fork") else "spawn")
        return Supervisor(
            monitor or (lambda: None),
            log_lines.append,
            worker_signal_handler or ignore_signal,
            **options,
        )
    return _make


def ignore_signal(signum):
    pass
