"""
Run State of the simulation engine.

Holds the steps of the current run, the bounded log stream, the metrics
and the run/cycle counter. Every mutating call reports the change through
``on_change`` so the Notification Hub can publish a fresh snapshot.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Callable, Deque, List, Optional, Sequence

from .metrics import MetricsAggregator
from .models import (
    InvalidTransitionError,
    LogEntry,
    LogEntryLevel,
    Metric,
    Run,
    Step,
    StepStatus,
    utcnow,
    validate_transition,
)
from .outcome import StageOutcome
from .stages import STAGES, Stage

NEW_RUN_MESSAGE = "=== New pipeline run started ==="


class RunState:
    """
    Mutable state of the current run.

    Attributes:
        stages (tuple[Stage, ...]): Stage definitions, in execution order
        metrics_aggregator (MetricsAggregator): Dashboard metrics
        log_capacity (int): Maximum number of retained log entries
        cycle_count (int): Number of runs started so far; the current run id

    Invariants:
        - Steps follow stage order and only move pending -> running ->
          success/failed.
        - At most one step is running at any time.
        - The log buffer never holds more than ``log_capacity`` entries.
    """

    def __init__(
        self,
        stages: Sequence[Stage] = STAGES,
        metrics: Optional[MetricsAggregator] = None,
        log_capacity: int = 50,
        on_change: Optional[Callable[[], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if log_capacity < 1:
            raise ValueError("log_capacity must be positive")
        self.stages = tuple(stages)
        self.metrics_aggregator = metrics or MetricsAggregator()
        self.log_capacity = log_capacity
        self.on_change = on_change
        self._clock = clock
        self._steps: List[Step] = []
        self._logs: Deque[LogEntry] = deque(maxlen=log_capacity)
        self._next_step_id = 1
        self._next_log_id = 1
        self.cycle_count = 0
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

    # Read side

    @property
    def run(self) -> Optional[Run]:
        if not self._steps:
            return None
        return Run.from_steps(
            self.cycle_count, self._steps, self.started_at, self.finished_at
        )

    @property
    def steps(self) -> List[Step]:
        return [step.model_copy() for step in self._steps]

    @property
    def logs(self) -> List[LogEntry]:
        return [entry.model_copy() for entry in self._logs]

    @property
    def metrics(self) -> List[Metric]:
        return self.metrics_aggregator.metrics()

    @property
    def running_count(self) -> int:
        return sum(1 for step in self._steps if step.status == StepStatus.running)

    @property
    def in_progress(self) -> bool:
        """True while any step of the current run has not finished."""
        return any(not step.status.is_terminal for step in self._steps)

    # Commands

    def resume(self, last_run_id: int = 0, last_step_id: int = 0, last_log_id: int = 0) -> None:
        """Continue id sequences after those already persisted elsewhere."""
        if self._steps:
            raise RuntimeError("Cannot resume ids once a run has started")
        self.cycle_count = max(self.cycle_count, last_run_id)
        self._next_step_id = max(self._next_step_id, last_step_id + 1)
        self._next_log_id = max(self._next_log_id, last_log_id + 1)

    def start_run(self) -> Run:
        """
        Open a new run: one step per stage, the first one running.

        Clears the log buffer, logs the start of the run, bumps the run id
        and moves the metrics one random-walk step.
        """
        self.cycle_count += 1
        self._steps = []
        for index, stage in enumerate(self.stages):
            self._steps.append(
                Step(
                    id=self._next_step_id,
                    run_id=self.cycle_count,
                    name=stage.display_name,
                    status=StepStatus.running if index == 0 else StepStatus.pending,
                )
            )
            self._next_step_id += 1
        self.started_at = self._clock()
        self.finished_at = None
        self._logs.clear()
        self.metrics_aggregator.recompute()
        self.add_log(LogEntryLevel.INFO, NEW_RUN_MESSAGE)
        return self.run

    def begin_step(self, index: int) -> Step:
        """Mark step ``index`` as running; a step already running is left as is."""
        step = self._step(index)
        if step.status == StepStatus.running:
            return step.model_copy()
        if self.running_count:
            raise InvalidTransitionError(
                f"Cannot start step {index}: another step is still running"
            )
        validate_transition(step.status, StepStatus.running)
        step.status = StepStatus.running
        self._changed()
        return step.model_copy()

    def complete_step(self, index: int, outcome: StageOutcome) -> Step:
        """Finish step ``index`` with ``outcome`` and log the stage summary."""
        step = self._step(index)
        status = StepStatus.success if outcome.succeeds else StepStatus.failed
        validate_transition(step.status, status)
        step.status = status
        step.duration = outcome.duration_seconds
        if not self.in_progress:
            self.finished_at = self._clock()
        self._changed()
        if outcome.succeeds:
            self.add_log(LogEntryLevel.SUCCESS, f"{step.name} completed successfully")
        else:
            self.add_log(LogEntryLevel.ERROR, f"{step.name} failed")
        return step.model_copy()

    def add_log(self, level: LogEntryLevel, message: str) -> LogEntry:
        """Append a log entry; the oldest entry is evicted when full."""
        entry = LogEntry(
            id=self._next_log_id,
            level=level,
            message=message,
            timestamp=self._clock(),
        )
        self._next_log_id += 1
        self._logs.append(entry)
        self._changed()
        return entry.model_copy()

    def _step(self, index: int) -> Step:
        if not 0 <= index < len(self._steps):
            raise IndexError(f"No step at index {index} in run {self.cycle_count}")
        return self._steps[index]

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()
