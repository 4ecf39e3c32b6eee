"""
Cooperative Scheduler driving the simulation.

Every timed transition of the engine is an entry "fire after D seconds,
invoke T" in one priority queue. A single driving loop executes the due
entries in order; entries are cancellable, and the clock is swappable so
tests can step through time deterministically with ``ManualClock``.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from .logger import LoggerInterface, StandardLogger


class Clock(ABC):
    """Source of the current time in seconds."""

    @abstractmethod
    def now(self) -> float:
        pass


class MonotonicClock(Clock):
    """Real time, based on ``time.monotonic``."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def set(self, value: float) -> None:
        if value < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = value

    def advance(self, seconds: float) -> None:
        self.set(self._now + seconds)


@dataclass(order=True)
class ScheduledCall:
    """A pending "invoke callback at ``due``" entry."""

    due: float
    seq: int
    callback: Callable[..., Any] = field(compare=False)
    args: Tuple[Any, ...] = field(default=(), compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class Scheduler:
    """
    Single-threaded timer queue.

    Attributes:
        clock (Clock): Time source; ``ManualClock`` enables ``advance``
        logger (LoggerInterface): Receives failing entries
        on_error (Optional[Callable[[BaseException], None]]): Called after a
            failing entry has been logged
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        logger: Optional[LoggerInterface] = None,
    ) -> None:
        self.clock = clock or MonotonicClock()
        self.logger = logger or StandardLogger()
        self.on_error: Optional[Callable[[BaseException], None]] = None
        self._queue: List[ScheduledCall] = []
        self._seq = itertools.count()
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None

    @property
    def pending(self) -> int:
        return sum(1 for entry in self._queue if not entry.cancelled)

    @property
    def running(self) -> bool:
        return self._running

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledCall:
        """Schedule ``callback(*args)`` to fire ``delay`` seconds from now."""
        if delay < 0:
            raise ValueError("delay must not be negative")
        entry = ScheduledCall(self.clock.now() + delay, next(self._seq), callback, args)
        heapq.heappush(self._queue, entry)
        self._wake()
        return entry

    def cancel_all(self) -> int:
        """Cancel every pending entry; return how many were cancelled."""
        cancelled = 0
        for entry in self._queue:
            if not entry.cancelled:
                entry.cancel()
                cancelled += 1
        self._queue.clear()
        return cancelled

    def next_due(self) -> Optional[float]:
        self._drop_cancelled()
        return self._queue[0].due if self._queue else None

    def run_due(self) -> int:
        """
        Execute every entry that is due, in (due, insertion) order.

        A failing entry is logged and reported to ``on_error``; the
        remaining entries still run.

        Returns:
            int: Number of entries executed
        """
        executed = 0
        now = self.clock.now()
        while True:
            self._drop_cancelled()
            if not self._queue or self._queue[0].due > now:
                return executed
            entry = heapq.heappop(self._queue)
            executed += 1
            try:
                entry.callback(*entry.args)
            except Exception as e:
                self.logger.exception(
                    f"Scheduled task failed: {e}",
                    task=getattr(entry.callback, "__name__", repr(entry.callback)),
                    error=str(e),
                )
                if self.on_error is not None:
                    self.on_error(e)

    def advance(self, seconds: float) -> int:
        """
        Move a ``ManualClock`` forward, firing entries at their due times.

        Entries scheduled while advancing fire too when they fall inside
        the advanced interval.
        """
        if not isinstance(self.clock, ManualClock):
            raise TypeError("advance() requires a ManualClock")
        target = self.clock.now() + seconds
        executed = 0
        while True:
            due = self.next_due()
            if due is None or due > target:
                break
            self.clock.set(max(due, self.clock.now()))
            executed += self.run_due()
        self.clock.set(target)
        return executed

    async def run_forever(self) -> None:
        """Drive the queue in real time until ``shutdown`` is called."""
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._running = True
        self.logger.info("Scheduler loop started")
        try:
            while self._running:
                self.run_due()
                due = self.next_due()
                timeout = None if due is None else max(0.0, due - self.clock.now())
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self._loop = None
            self._wakeup = None
            self.logger.info("Scheduler loop stopped")

    def shutdown(self) -> None:
        """Cancel pending entries and stop the driving loop."""
        self.cancel_all()
        self._running = False
        self._wake()

    def _wake(self) -> None:
        if self._loop is not None and self._wakeup is not None:
            self._loop.call_soon_threadsafe(self._wakeup.set)

    def _drop_cancelled(self) -> None:
        while self._queue and self._queue[0].cancelled:
            heapq.heappop(self._queue)
