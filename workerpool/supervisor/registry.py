"""Append-only table of worker specifications."""

import logging
from typing import Any, Callable, Dict, Iterator, List, Sequence

from .models import WorkerSpec

log = logging.getLogger(__name__)


class WorkerRegistry:
    """
    Holds every registered `WorkerSpec` in registration order.

    There is no duplicate detection. Registering the same entry point many
    times is the normal way to run many identical workers.
    """

    def __init__(self) -> None:
        self._specs: Dict[int, WorkerSpec] = {}
        self._next_id = 1

    def register(
        self,
        entry_point: Callable[..., Any],
        args: Sequence[Any] = (),
        max_run_time: float = 0.0,
    ) -> int:
        """
        Adds a worker template and returns its id.

        :param entry_point: Callable run by the child after it is created.
        :param args: Positional arguments for the entry point.
        :param max_run_time: Seconds a child may run before it is killed. This
            is not a restart: the child is sent an unconditional kill and any
            work in progress is lost. 0 means unlimited.
        :return int: The id of the new spec.
        :raises TypeError: If the entry point is not callable.
        :raises ValueError: If max_run_time is negative or not a number.
        """
        spec = WorkerSpec(
            id=self._next_id,
            entry_point=entry_point,
            args=tuple(args),
            max_run_time=max_run_time,
        )
        self._specs[spec.id] = spec
        self._next_id += 1
        log.debug(f"Registered worker spec #{spec.id}: {getattr(entry_point, '__qualname__', entry_point)!s}")
        return spec.id

    def get(self, spec_id: int) -> WorkerSpec:
        """Returns the spec with the given id, raising KeyError if unknown."""
        return self._specs[spec_id]

    def ids(self) -> List[int]:
        return list(self._specs)

    def __iter__(self) -> Iterator[WorkerSpec]:
        return iter(list(self._specs.values()))

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, spec_id: object) -> bool:
        return spec_id in self._specs
