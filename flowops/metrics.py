"""
Metrics Aggregator for the dashboard summary cards.

The four metrics are updated after every run with independent bounded
random walks. Values are kept as display strings, exactly as the
dashboard shows them, and parsed back before each update so metrics
restored from a durable store continue their walk seamlessly.
"""

from __future__ import annotations

import random
import re
from typing import List, Optional, Sequence

from .models import Metric

SUCCESS_RATE = "Success Rate"
TOTAL_DEPLOYMENTS = "Total Deployments"
FAILED_DEPLOYMENTS = "Failed Deployments"
AVG_DEPLOY_TIME = "Avg Deploy Time"

SUCCESS_RATE_BOUNDS = (85, 98)
MIN_DEPLOY_SECONDS = 60
DEFAULT_DEPLOY_SECONDS = 120

_TIME_PATTERN = re.compile(r"(\d+)m\s*(\d+)s")

DEFAULT_METRICS = (
    Metric(
        id=1,
        label=SUCCESS_RATE,
        value="92%",
        trend="+2%",
        description="Deployment success rate over last 30 days",
    ),
    Metric(
        id=2,
        label=TOTAL_DEPLOYMENTS,
        value="128",
        trend="+12",
        description="Total deployments this month",
    ),
    Metric(
        id=3,
        label=FAILED_DEPLOYMENTS,
        value="11",
        trend="-3",
        description="Failed deployments this month",
    ),
    Metric(
        id=4,
        label=AVG_DEPLOY_TIME,
        value="2m 14s",
        trend="-8s",
        description="Average deployment duration",
    ),
)


def parse_duration(text: str) -> int:
    """Parse an "Xm Ys" display value into seconds (120 when unparseable)."""
    match = _TIME_PATTERN.search(text)
    if match:
        return int(match.group(1)) * 60 + int(match.group(2))
    return DEFAULT_DEPLOY_SECONDS


def format_duration(seconds: int) -> str:
    return f"{seconds // 60}m {seconds % 60}s"


def _parse_int(text: str) -> int:
    return round(float(text.replace(",", "").rstrip("%").strip()))


def _signed(delta: int, suffix: str = "") -> Optional[str]:
    if delta == 0:
        return None
    return f"{delta:+d}{suffix}"


class MetricsAggregator:
    """
    Holds the dashboard metrics and applies one random-walk step per run.

    Attributes:
        rng (random.Random): Random source for every walk
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()
        self._metrics: List[Metric] = []

    @property
    def initialized(self) -> bool:
        return bool(self._metrics)

    def initialize(self) -> bool:
        """Create the default metrics unless metrics already exist."""
        if self._metrics:
            return False
        self._metrics = [m.model_copy() for m in DEFAULT_METRICS]
        return True

    def load(self, metrics: Sequence[Metric]) -> None:
        """Adopt previously persisted metrics instead of the defaults."""
        if metrics:
            self._metrics = [m.model_copy() for m in metrics]

    def metrics(self) -> List[Metric]:
        return [m.model_copy() for m in self._metrics]

    def get(self, label: str) -> Optional[Metric]:
        for metric in self._metrics:
            if metric.label == label:
                return metric.model_copy()
        return None

    def recompute(self) -> List[Metric]:
        """Apply one bounded random-walk step to every metric."""
        self.initialize()
        for metric in self._metrics:
            if metric.label == SUCCESS_RATE:
                self._walk_success_rate(metric)
            elif metric.label == TOTAL_DEPLOYMENTS:
                self._walk_total(metric)
            elif metric.label == FAILED_DEPLOYMENTS:
                self._walk_failures(metric)
            elif metric.label == AVG_DEPLOY_TIME:
                self._walk_deploy_time(metric)
        return self.metrics()

    def _walk_success_rate(self, metric: Metric) -> None:
        low, high = SUCCESS_RATE_BOUNDS
        current = _parse_int(metric.value)
        updated = max(low, min(high, current + self.rng.randint(-2, 2)))
        metric.value = f"{updated}%"
        metric.trend = _signed(updated - current, "%")

    def _walk_total(self, metric: Metric) -> None:
        delta = self.rng.randint(1, 3)
        metric.value = str(_parse_int(metric.value) + delta)
        metric.trend = _signed(delta)

    def _walk_failures(self, metric: Metric) -> None:
        # Weighted: 30% down, 35% flat, 35% up
        delta = self.rng.choices((-1, 0, 1), weights=(30, 35, 35))[0]
        current = _parse_int(metric.value)
        updated = max(0, current + delta)
        metric.value = str(updated)
        metric.trend = _signed(updated - current)

    def _walk_deploy_time(self, metric: Metric) -> None:
        current = parse_duration(metric.value)
        updated = max(MIN_DEPLOY_SECONDS, current + self.rng.randint(-10, 10))
        metric.value = format_duration(updated)
        metric.trend = _signed(updated - current, "s")
