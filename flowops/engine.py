"""
Pipeline Simulation Engine for the FlowOps dashboard.

This module drives the simulated CI/CD pipeline. A run walks through the
Code Push, Build, Test and Deploy stages in order; each stage prints its
log lines over a short window, succeeds or fails at random, and hands over
to the next stage after a short pause. After the last stage a new run
starts on its own.

The engine:
- Schedules every transition on a cancellable cooperative scheduler
- Keeps run state, bounded logs, metrics and chart samples up to date
- Publishes a snapshot to all observers after each mutation
- Never halts on a failed stage; only the run status reflects failures

Classes:
    PipelineEngine: The simulation state machine
    TriggerOutcome: Result of a manual deployment trigger

Version: 0.1.0
"""

from __future__ import annotations

import random
from enum import Enum
from threading import RLock
from typing import Callable, Dict, List, Optional, Sequence

from .chart import ChartSeries
from .config import Settings, TriggerPolicy
from .hub import NotificationHub, SnapshotHandler
from .logger import LoggerInterface, StandardLogger
from .metrics import MetricsAggregator
from .models import ChartSample, LogEntryLevel, Metric, Snapshot
from .outcome import OutcomeGenerator, ScheduledLog, StageOutcome
from .scheduler import Scheduler
from .stages import STAGES, Stage, StageSequencer
from .state import RunState


class SimulationError(Exception):
    """Base class for engine command errors."""


class RunInProgressError(SimulationError):
    """Raised when a trigger is rejected because a run is still in flight."""


class EngineNotRunningError(SimulationError):
    """Raised when a command needs a started engine."""


class TriggerOutcome(str, Enum):
    """What a manual deployment trigger did."""

    started = "started"
    queued = "queued"
    restarted = "restarted"


class PipelineEngine:
    """
    Simulation state machine with dependency injection.

    RunPending -> StageRunning(i) -> StageCompleted(i) -> StageRunning(i+1)
    -> ... -> CycleComplete -> RunPending. Each arrow is a scheduler entry,
    so ``stop`` cancels progression completely.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        rng: Optional[random.Random] = None,
        logger: Optional[LoggerInterface] = None,
        stages: Sequence[Stage] = STAGES,
    ) -> None:
        """
        Initialize the engine.

        Args:
            settings: Simulation constants (defaults to ``Settings()``)
            scheduler: Timer queue (defaults to a real-time scheduler)
            rng: Random source shared by every random draw
            logger: Logger implementation (defaults to StandardLogger)
            stages: Stage definitions, in execution order
        """
        self.settings = settings or Settings()
        self.logger = logger or StandardLogger()
        self.rng = rng or random.Random(self.settings.random_seed)
        self.scheduler = scheduler or Scheduler(logger=self.logger)
        self.scheduler.on_error = self._on_tick_failure

        self.sequencer = StageSequencer(stages)
        self.outcomes = OutcomeGenerator(
            self.rng,
            failure_probability=self.settings.failure_probability,
            duration_range=(
                self.settings.stage_duration_min,
                self.settings.stage_duration_max,
            ),
            log_window=self.settings.stage_log_window,
        )
        self.hub = NotificationHub(self._build_snapshot, self.logger)
        self.metrics = MetricsAggregator(self.rng)
        self.state = RunState(
            self.sequencer.stages,
            metrics=self.metrics,
            log_capacity=self.settings.log_capacity,
            on_change=self.hub.publish,
        )
        self.chart = ChartSeries(
            self.settings.chart_capacity, self.rng, on_change=self.hub.publish
        )
        self._lock = RLock()
        self._running = False
        self._queued_trigger = False

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start progression; calling it on a running engine does nothing."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self.metrics.initialize()
            if not len(self.chart):
                self.chart.seed()
            self.logger.info(
                "Pipeline engine started",
                stage_count=len(self.sequencer),
                trigger_policy=self.settings.trigger_policy.value,
            )
            self._start_run()

    def restore(self, metrics: Sequence[Metric], last_ids: Dict[str, int]) -> None:
        """
        Continue from state persisted by a previous process.

        Existing metrics are adopted instead of the defaults, and run, step
        and log ids continue after the highest stored ones.
        """
        with self._lock:
            if self._running:
                raise RuntimeError("restore() must be called before start()")
            self.metrics.load(metrics)
            self.state.resume(
                last_run_id=last_ids.get("run", 0),
                last_step_id=last_ids.get("step", 0),
                last_log_id=last_ids.get("log", 0),
            )
            if metrics or any(last_ids.values()):
                self.logger.info(
                    "Pipeline engine restored",
                    last_run_id=last_ids.get("run", 0),
                    restored_metrics=len(metrics),
                )

    def stop(self) -> None:
        """Halt progression by cancelling every pending continuation."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._queued_trigger = False
            cancelled = self.scheduler.cancel_all()
            self.logger.info(
                "Pipeline engine stopped",
                cancelled_tasks=cancelled,
                run_id=self.state.cycle_count,
            )

    # In-process interface

    def subscribe(self, observer: SnapshotHandler) -> Callable[[], None]:
        with self._lock:
            return self.hub.subscribe(observer)

    def get_state(self) -> Snapshot:
        with self._lock:
            return self._build_snapshot()

    def get_chart_data(self) -> List[ChartSample]:
        with self._lock:
            return self.chart.samples()

    def get_metrics(self) -> List[Metric]:
        with self._lock:
            return self.metrics.metrics()

    def trigger_deployment(self) -> TriggerOutcome:
        """
        Request a new run.

        Without a run in flight the new run starts at once, skipping the
        pause between cycles. Otherwise the configured ``TriggerPolicy``
        decides.

        Raises:
            EngineNotRunningError: If the engine is stopped
            RunInProgressError: If the policy is ``reject`` and a run is active
        """
        with self._lock:
            if not self._running:
                raise EngineNotRunningError("Pipeline engine is not running")
            run_id = self.state.cycle_count
            if not self.state.in_progress:
                self.logger.info("Manual deployment triggered", run_id=run_id + 1)
                self._start_run()
                return TriggerOutcome.started

            policy = self.settings.trigger_policy
            if policy == TriggerPolicy.reject:
                self.logger.warning("Manual deployment rejected", run_id=run_id)
                raise RunInProgressError(f"Run #{run_id} is already in progress")
            if policy == TriggerPolicy.queue:
                if not self._queued_trigger:
                    self._queued_trigger = True
                    self.state.add_log(
                        LogEntryLevel.INFO,
                        f"Manual deployment queued; it starts after run #{run_id}",
                    )
                self.logger.info("Manual deployment queued", run_id=run_id)
                return TriggerOutcome.queued

            self.logger.warning(
                "Manual deployment restarting in-flight run", run_id=run_id
            )
            self._start_run()
            return TriggerOutcome.restarted

    # Transitions

    def _start_run(self) -> None:
        # Outstanding continuations belong to the previous run
        self.scheduler.cancel_all()
        self._queued_trigger = False
        self.sequencer.reset()
        run = self.state.start_run()
        self.chart.sample(self.state.steps, len(self.sequencer))
        self.logger.info("Pipeline run started", run_id=run.id)
        self.scheduler.call_later(0, self._begin_stage)

    def _begin_stage(self) -> None:
        with self._lock:
            index = self.sequencer.current_index
            stage = self.sequencer.current_stage()
            self.state.begin_step(index)
            self.state.add_log(LogEntryLevel.INFO, f"Starting {stage.display_name} stage...")
            self.chart.sample(self.state.steps, len(self.sequencer))

            outcome = self.outcomes.decide(stage)
            self.logger.debug(
                "Stage started",
                run_id=self.state.cycle_count,
                stage=stage.key.value,
                step_index=index,
                succeeds=outcome.succeeds,
            )
            for position, line in enumerate(outcome.log_lines):
                self.scheduler.call_later(
                    line.offset_seconds, self._emit_log, line, position % 2 == 0
                )
            self.scheduler.call_later(
                outcome.window_seconds, self._complete_stage, index, outcome
            )

    def _emit_log(self, line: ScheduledLog, sample: bool) -> None:
        with self._lock:
            self.state.add_log(line.level, line.message)
            if sample:
                self.chart.sample(self.state.steps, len(self.sequencer))

    def _complete_stage(self, index: int, outcome: StageOutcome) -> None:
        with self._lock:
            step = self.state.complete_step(index, outcome)
            self.chart.sample(self.state.steps, len(self.sequencer))
            log = self.logger.info if outcome.succeeds else self.logger.warning
            log(
                "Stage completed",
                run_id=step.run_id,
                step_index=index,
                status=step.status.value,
                duration=step.duration,
            )
            if not self.sequencer.is_last:
                self.scheduler.call_later(self.settings.stage_pause, self._advance)
            elif self._queued_trigger:
                self.scheduler.call_later(0, self._finish_cycle)
            else:
                self.scheduler.call_later(self.settings.cycle_pause, self._finish_cycle)

    def _advance(self) -> None:
        with self._lock:
            self.sequencer.advance()
            self._begin_stage()

    def _finish_cycle(self) -> None:
        with self._lock:
            run = self.state.run
            self.logger.info(
                "Pipeline run finished",
                run_id=run.id,
                status=run.status.value,
            )
            if self.sequencer.advance():
                self._start_run()

    def _on_tick_failure(self, error: BaseException) -> None:
        # Resume with a fresh run so a broken transition cannot stall the cycle
        with self._lock:
            if not self._running:
                return
            self.scheduler.cancel_all()
            self.scheduler.call_later(self.settings.cycle_pause, self._recover)

    def _recover(self) -> None:
        with self._lock:
            self.logger.warning(
                "Restarting pipeline run after a failed transition",
                run_id=self.state.cycle_count,
            )
            self._start_run()

    def _build_snapshot(self) -> Snapshot:
        stage = self.sequencer.current_stage()
        return Snapshot(
            run=self.state.run,
            steps=self.state.steps,
            logs=self.state.logs,
            metrics=self.state.metrics,
            chart=self.chart.samples(),
            current_stage=stage.key,
            current_stage_index=self.sequencer.current_index,
            cycle_count=self.state.cycle_count,
        )
