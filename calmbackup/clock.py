"""
Clock abstractions and the cooperative time budget.

Notes
-----
Engine code must not access wall-clock time directly. Callers provide a Clock.
The deadline of a backup run is an explicit value computed once at entry and
checked only at phase boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

from calmbackup.errors import BackupTimeoutError


class Clock(Protocol):
    """A source of time for deterministic behavior."""

    def now(self) -> datetime:
        """
        Return the current time.

        Returns
        -------
        datetime
            A timezone-aware datetime.
        """
        ...


@dataclass(frozen=True, slots=True)
class SystemClock:
    """Clock that returns the current system time in UTC."""

    def now(self) -> datetime:
        """Return the current system time as an aware UTC datetime."""
        return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class FixedClock:
    """Clock that always returns a fixed time (useful for tests)."""

    fixed_time: datetime

    def now(self) -> datetime:
        """Return the fixed time, assuming UTC for naive values."""
        if self.fixed_time.tzinfo is None:
            return self.fixed_time.replace(tzinfo=timezone.utc)
        return self.fixed_time


@dataclass(slots=True)
class SteppingClock:
    """
    Clock that advances by a fixed step on every read.

    Used to simulate a backup run that spends time between phase checks.
    """

    start: datetime
    step: timedelta = field(default=timedelta(seconds=1))
    _reads: int = 0

    def now(self) -> datetime:
        """Return the current simulated time and advance it by one step."""
        current = self.start + self.step * self._reads
        self._reads += 1
        if current.tzinfo is None:
            return current.replace(tzinfo=timezone.utc)
        return current


def deadline_after(clock: Clock, time_budget: float) -> datetime:
    """
    Compute the deadline for a run that starts now.

    Parameters
    ----------
    clock:
        Time source.
    time_budget:
        Budget in seconds. Negative values are treated as zero; budgets
        beyond the representable range yield the latest possible deadline.

    Returns
    -------
    datetime
        The moment after which no new phase may start.
    """
    now = clock.now()
    try:
        return now + timedelta(seconds=max(0.0, float(time_budget)))
    except OverflowError:
        return datetime.max.replace(tzinfo=now.tzinfo)


def seconds_left(clock: Clock, deadline: datetime) -> float:
    """Return the number of seconds left until `deadline` (never negative)."""
    return max(0.0, (deadline - clock.now()).total_seconds())


def throw_if_out_of_time(deadline: datetime, clock: Clock) -> None:
    """
    Raise if the current time is later than `deadline`.

    Parameters
    ----------
    deadline:
        Timezone-aware deadline.
    clock:
        Time source.

    Raises
    ------
    BackupTimeoutError
        If ``clock.now() > deadline``.
    """
    now = clock.now()
    if now > deadline:
        raise BackupTimeoutError(
            f"Time budget exhausted at {now.isoformat()} (deadline {deadline.isoformat()})."
        )


def unix_time(clock: Clock) -> int:
    """Return the clock's current time as integral unix seconds."""
    return int(clock.now().timestamp())
