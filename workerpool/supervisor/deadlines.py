"""
Kill deadlines.

Every live child may carry an absolute deadline (monotonic seconds) after
which it must be killed unconditionally. The supervisor keeps a single
`next_check_time`, the earliest pending deadline, so it only scans its
children when something can actually be due.

These helpers keep no state of their own; they operate on the records and
values the supervision loop hands them.
"""
from typing import Iterable, List, Optional, Tuple

from .models import ChildProcess, ChildState


def arm_deadline(child: ChildProcess, delay: float, now: float) -> float:
    """
    Arms the child's kill deadline `delay` seconds from `now`.

    An already armed deadline is only ever moved earlier.

    :return float: The child's effective deadline.
    """
    deadline = now + delay
    if child.kill_deadline is None or deadline < child.kill_deadline:
        child.kill_deadline = deadline
    return child.kill_deadline


def lower_next_check(next_check: Optional[float], deadline: float) -> float:
    """Returns the next check time after taking `deadline` into account."""
    if next_check is None or deadline < next_check:
        return deadline
    return next_check


def is_due(next_check: Optional[float], now: float) -> bool:
    return next_check is not None and next_check <= now


def check_deadlines(
    children: Iterable[ChildProcess], now: float
) -> Tuple[List[ChildProcess], Optional[float]]:
    """
    Finds the children whose kill deadline has passed.

    :param children: The live child records.
    :param now: The current monotonic time.
    :return tuple: (children to kill, next check time or None if nothing is pending).
    """
    expired: List[ChildProcess] = []
    next_check: Optional[float] = None
    for child in children:
        if child.kill_deadline is None or child.state is ChildState.KILLED:
            continue
        if child.kill_deadline <= now:
            expired.append(child)
        else:
            next_check = lower_next_check(next_check, child.kill_deadline)
    return expired, next_check
