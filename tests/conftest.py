import random

import pytest

from flowops.config import Settings
from flowops.engine import PipelineEngine
from flowops.scheduler import ManualClock, Scheduler


class StubRandom(random.Random):
    """
    Deterministic random source.

    ``random()`` always returns ``value`` (0.99 makes every stage succeed,
    0.0 makes every stage fail), ``randint`` returns ``integer`` clamped to
    the requested range (or the lower bound) and ``choice`` the first item.
    """

    def __init__(self, value: float = 0.99, integer=None):
        super().__init__(0)
        self.value = value
        self.integer = integer

    def random(self):
        return self.value

    def randint(self, a, b):
        if self.integer is None:
            return a
        return max(a, min(b, self.integer))

    def choice(self, seq):
        return seq[0]


@pytest.fixture
def stub_random():
    return StubRandom


@pytest.fixture
def engine_factory():
    """Build engines driven by a ManualClock scheduler."""

    def build(rng=None, **overrides):
        settings = Settings(simulation_autorun=False, **overrides)
        return PipelineEngine(
            settings,
            scheduler=Scheduler(ManualClock()),
            rng=rng or StubRandom(),
        )

    return build
