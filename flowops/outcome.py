"""
Outcome Generator for simulated stage executions.

For every stage execution the generator draws whether the stage fails,
how long it reportedly took, and which log lines it prints at which
offset of its execution window. All randomness comes from an injectable
``random.Random`` so runs are reproducible under test.
"""

from __future__ import annotations

import random
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from .models import LogEntryLevel
from .stages import Stage

DEFAULT_FAILURE_PROBABILITY = 0.1
DEFAULT_DURATION_RANGE = (2, 4)
DEFAULT_LOG_WINDOW = 2.0


class ScheduledLog(BaseModel):
    """A log line to emit ``offset_seconds`` after the stage started."""

    level: LogEntryLevel
    message: str
    offset_seconds: float = Field(..., ge=0)


class StageOutcome(BaseModel):
    """
    Result drawn for one stage execution.

    Attributes:
        succeeds (bool): Whether the stage ends successfully
        duration_seconds (int): Duration reported on the step
        log_lines (list[ScheduledLog]): Lines emitted while the stage runs
        window_seconds (float): Real time the stage stays running
    """

    succeeds: bool
    duration_seconds: int = Field(..., ge=0)
    log_lines: List[ScheduledLog] = Field(default_factory=list)
    window_seconds: float = Field(..., ge=0)


class OutcomeGenerator:
    """Draws success/failure, duration and log lines for a stage."""

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        failure_probability: float = DEFAULT_FAILURE_PROBABILITY,
        duration_range: Tuple[int, int] = DEFAULT_DURATION_RANGE,
        log_window: float = DEFAULT_LOG_WINDOW,
    ) -> None:
        if not 0.0 <= failure_probability <= 1.0:
            raise ValueError("failure_probability must be between 0 and 1")
        low, high = duration_range
        if low > high:
            raise ValueError("duration_range minimum exceeds its maximum")
        self.rng = rng or random.Random()
        self.failure_probability = failure_probability
        self.duration_range = (low, high)
        self.log_window = log_window

    def decide(self, stage: Stage) -> StageOutcome:
        """
        Draw the outcome of one execution of ``stage``.

        The success-path templates are spread evenly across the log window.
        A failing stage additionally prints one randomly chosen failure
        template, at ERROR level, right after the last scheduled line.
        """
        # Drawn per stage execution, not per run
        succeeds = self.rng.random() >= self.failure_probability
        duration = self.rng.randint(*self.duration_range)

        templates = stage.log_templates
        step = self.log_window / len(templates) if templates else 0.0
        lines = [
            ScheduledLog(
                level=LogEntryLevel.INFO,
                message=message,
                offset_seconds=(i + 1) * step,
            )
            for i, message in enumerate(templates)
        ]
        if not succeeds and stage.failure_templates:
            lines.append(
                ScheduledLog(
                    level=LogEntryLevel.ERROR,
                    message=self.rng.choice(stage.failure_templates),
                    offset_seconds=lines[-1].offset_seconds if lines else 0.0,
                )
            )
        window = lines[-1].offset_seconds if lines else 0.0
        return StageOutcome(
            succeeds=succeeds,
            duration_seconds=duration,
            log_lines=lines,
            window_seconds=window,
        )
