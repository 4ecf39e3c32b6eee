"""
Data Models for the FlowOps Simulator.

This module defines the Pydantic models shared by the simulation engine,
the snapshot stores and the HTTP API. JSON output uses camelCase aliases
(``runId``, ``startTime``) so the dashboard can consume it unchanged.

Classes:
    StageName: The fixed, ordered set of pipeline stages
    StepStatus: Lifecycle of a single stage execution
    RunStatus: Aggregate status of a run, derived from its steps
    LogEntryLevel: Severity of a pipeline log entry
    Step: One stage's execution record within a run
    Run: One full cycle through all stages
    LogEntry: A single line of the pipeline log stream
    Metric: A dashboard summary value with its trend
    ChartSample: One (time, success %, latency) point
    PipelineView: A run together with its steps
    Snapshot: Independent copy of the engine state handed to observers

Version: 0.1.0
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidTransitionError(ValueError):
    """Raised when a step is moved to a status it cannot reach."""


class StageName(str, Enum):
    """
    Enumeration of the simulated pipeline stages.

    The declaration order is the execution order of every run.
    """

    code_push = "code_push"
    build = "build"
    test = "test"
    deploy = "deploy"


class StepStatus(str, Enum):
    """
    Enumeration of step states.

    Note:
        Legal transitions are pending -> running -> (success|failed).
    """

    pending = "pending"
    running = "running"
    success = "success"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.success, StepStatus.failed)


class RunStatus(str, Enum):
    """Aggregate run states, always computed from the run's steps."""

    pending = "pending"
    running = "running"
    success = "success"
    failed = "failed"


class LogEntryLevel(str, Enum):
    """Severity levels used in the pipeline log stream."""

    INFO = "INFO"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


ALLOWED_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.pending: frozenset({StepStatus.running}),
    StepStatus.running: frozenset({StepStatus.success, StepStatus.failed}),
    StepStatus.success: frozenset(),
    StepStatus.failed: frozenset(),
}


def validate_transition(current: StepStatus, new: StepStatus) -> None:
    """
    Check that a step may move from ``current`` to ``new``.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Illegal step transition: {current.value} -> {new.value}"
        )


def derive_run_status(statuses: Iterable[StepStatus]) -> RunStatus:
    """
    Compute the aggregate status of a run from its step statuses.

    A run succeeded when every step succeeded, failed as soon as any step
    failed, is running while a step runs, and is pending otherwise.
    """
    statuses = list(statuses)
    if statuses and all(s == StepStatus.success for s in statuses):
        return RunStatus.success
    if any(s == StepStatus.failed for s in statuses):
        return RunStatus.failed
    if any(s == StepStatus.running for s in statuses):
        return RunStatus.running
    return RunStatus.pending


class CamelModel(BaseModel):
    """Base model serialising field names as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Step(CamelModel):
    """
    A stage's execution record within one run.

    Attributes:
        id (int): Unique, monotonically increasing step id
        run_id (int): Id of the owning run
        name (str): Display name of the stage
        status (StepStatus): Current status (default: pending)
        duration (Optional[int]): Reported duration in seconds once completed
    """

    id: int
    run_id: int
    name: str
    status: StepStatus = StepStatus.pending
    duration: Optional[int] = None


class Run(CamelModel):
    """
    One full cycle through all stages.

    Note:
        ``status`` is filled from ``derive_run_status`` whenever a Run is
        built; it is never tracked as independent state.
    """

    id: int
    status: RunStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @classmethod
    def from_steps(
        cls,
        run_id: int,
        steps: Iterable[Step],
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> "Run":
        return cls(
            id=run_id,
            status=derive_run_status(step.status for step in steps),
            start_time=start_time,
            end_time=end_time,
        )


class LogEntry(CamelModel):
    """A single pipeline log line."""

    id: int
    level: LogEntryLevel
    message: str
    timestamp: datetime


class Metric(CamelModel):
    """
    A dashboard summary value.

    Attributes:
        id (int): Metric identifier
        label (str): Unique label, e.g. "Success Rate"
        value (str): Display value, e.g. "92%" or "2m 14s"
        trend (Optional[str]): Signed delta of the last update, e.g. "+2%"
        description (Optional[str]): Human readable explanation
    """

    id: int
    label: str
    value: str
    trend: Optional[str] = None
    description: Optional[str] = None


class ChartSample(CamelModel):
    """One point of the success/latency time series."""

    time: str
    success: int = Field(..., ge=0, le=100)
    latency: int = Field(..., ge=0)
    timestamp: Optional[datetime] = None


class PipelineView(CamelModel):
    """A run together with its ordered steps."""

    run: Run
    steps: List[Step] = Field(default_factory=list)


class Snapshot(CamelModel):
    """
    Independent copy of the engine state delivered to observers.

    Mutating a snapshot never affects the engine that produced it.
    """

    run: Optional[Run] = None
    steps: List[Step] = Field(default_factory=list)
    logs: List[LogEntry] = Field(default_factory=list)
    metrics: List[Metric] = Field(default_factory=list)
    chart: List[ChartSample] = Field(default_factory=list)
    current_stage: StageName = StageName.code_push
    current_stage_index: int = 0
    cycle_count: int = 0
