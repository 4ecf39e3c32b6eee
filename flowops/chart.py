"""
Chart Series Buffer: bounded success/latency time series.
"""

from __future__ import annotations

import random
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Iterable, List, Optional

from .models import ChartSample, Step, StepStatus, utcnow

LATENCY_RANGE_MS = (80, 150)
TIME_FORMAT = "%H:%M:%S"


class ChartSeries:
    """
    Fixed-capacity, insertion-ordered buffer of chart samples.

    The oldest sample is evicted once the buffer holds ``capacity`` samples.
    """

    def __init__(
        self,
        capacity: int = 20,
        rng: Optional[random.Random] = None,
        on_change: Optional[Callable[[], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.rng = rng or random.Random()
        self.on_change = on_change
        self._clock = clock
        self._samples: Deque[ChartSample] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._samples)

    def samples(self) -> List[ChartSample]:
        return [sample.model_copy() for sample in self._samples]

    def append(self, sample: ChartSample) -> None:
        self._samples.append(sample)
        if self.on_change is not None:
            self.on_change()

    def sample(self, steps: Iterable[Step], stage_count: int) -> ChartSample:
        """Record the success share of the current run and a latency reading."""
        succeeded = sum(1 for step in steps if step.status == StepStatus.success)
        success = round(succeeded / stage_count * 100) if stage_count else 0
        now = self._clock()
        point = ChartSample(
            time=now.strftime(TIME_FORMAT),
            success=success,
            latency=self.rng.randint(*LATENCY_RANGE_MS),
            timestamp=now,
        )
        self.append(point)
        return point.model_copy()

    def seed(self, count: int = 5) -> None:
        """Pre-fill one-minute-spaced history so charts start populated."""
        now = self._clock()
        for i in range(count - 1, -1, -1):
            moment = now - timedelta(minutes=i)
            self._samples.append(
                ChartSample(
                    time=moment.strftime(TIME_FORMAT),
                    success=round(self.rng.uniform(85, 95)),
                    latency=self.rng.randint(*LATENCY_RANGE_MS),
                    timestamp=moment,
                )
            )
        if self.on_change is not None:
            self.on_change()
