"""Tests for the worker spec registry."""

import dataclasses

import pytest

from workerpool.supervisor.models import WorkerSpec
from workerpool.supervisor.registry import WorkerRegistry


def work(*args):
    pass


def test_register_assigns_sequential_ids():
    registry = WorkerRegistry()
    assert registry.register(work) == 1
    assert registry.register(work, ["a"], 2.5) == 2
    assert registry.ids() == [1, 2]
    assert len(registry) == 2
    assert 2 in registry
    assert 3 not in registry


def test_same_entry_point_can_be_registered_many_times():
    registry = WorkerRegistry()
    for _ in range(5):
        registry.register(work)
    assert [spec.entry_point for spec in registry] == [work] * 5


def test_registered_spec_is_immutable():
    registry = WorkerRegistry()
    spec = registry.get(registry.register(work, ["a", 1], 3))

    assert spec == WorkerSpec(id=1, entry_point=work, args=("a", 1), max_run_time=3)
    with pytest.raises(dataclasses.FrozenInstanceError):
        spec.max_run_time = 10


def test_unknown_spec_raises_key_error():
    with pytest.raises(KeyError):
        WorkerRegistry().get(42)


@pytest.mark.parametrize("entry_point, max_run_time, error", [
    ("not callable", 0, TypeError),
    (work, -1, ValueError),
    (work, "10", ValueError),
    (work, True, ValueError),
])
def test_invalid_registration(entry_point, max_run_time, error):
    registry = WorkerRegistry()
    with pytest.raises(error):
        registry.register(entry_point, (), max_run_time)
    assert len(registry) == 0
