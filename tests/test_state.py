import pytest

from flowops.metrics import MetricsAggregator
from flowops.models import InvalidTransitionError, LogEntryLevel, RunStatus, StepStatus
from flowops.outcome import StageOutcome
from flowops.state import NEW_RUN_MESSAGE, RunState


def _outcome(succeeds=True, duration=3):
    return StageOutcome(succeeds=succeeds, duration_seconds=duration, window_seconds=2.0)


class TestRunState:
    """Test run state mutations and their invariants."""

    def setup_method(self, method):
        self.changes = []
        self.state = RunState(on_change=lambda: self.changes.append(1))

    def test_no_run_before_start(self):
        assert self.state.run is None
        assert self.state.steps == []
        assert not self.state.in_progress

    def test_start_run(self):
        run = self.state.start_run()

        assert run.id == 1
        assert run.status == RunStatus.running
        steps = self.state.steps
        assert [s.name for s in steps] == ["Code Push", "Build", "Test", "Deploy"]
        assert [s.status for s in steps] == [
            StepStatus.running,
            StepStatus.pending,
            StepStatus.pending,
            StepStatus.pending,
        ]
        assert all(s.run_id == 1 for s in steps)
        assert self.state.logs[0].message == NEW_RUN_MESSAGE
        assert self.state.started_at is not None
        assert self.state.finished_at is None
        assert self.changes

    def test_ids_increase_across_runs(self):
        self.state.start_run()
        first_ids = [s.id for s in self.state.steps]
        self.state.start_run()
        second_ids = [s.id for s in self.state.steps]

        assert first_ids == [1, 2, 3, 4]
        assert second_ids == [5, 6, 7, 8]
        assert self.state.run.id == 2
        assert self.state.cycle_count == 2

    def test_start_run_clears_logs(self):
        self.state.start_run()
        self.state.add_log(LogEntryLevel.INFO, "leftover")
        self.state.start_run()

        assert [entry.message for entry in self.state.logs] == [NEW_RUN_MESSAGE]

    def test_start_run_moves_metrics(self, stub_random):
        aggregator = MetricsAggregator(stub_random(0.99, integer=3))
        state = RunState(metrics=aggregator)
        state.start_run()
        assert {m.label: m.value for m in state.metrics}["Total Deployments"] == "131"

    def test_complete_and_begin_steps(self):
        self.state.start_run()
        step = self.state.complete_step(0, _outcome(duration=3))

        assert step.status == StepStatus.success
        assert step.duration == 3
        assert self.state.logs[-1].message == "Code Push completed successfully"
        assert self.state.logs[-1].level == LogEntryLevel.SUCCESS
        assert self.state.running_count == 0
        assert self.state.run.status == RunStatus.pending

        self.state.begin_step(1)
        assert self.state.steps[1].status == StepStatus.running
        assert self.state.run.status == RunStatus.running

    def test_failed_step_logs_error(self):
        self.state.start_run()
        self.state.complete_step(0, _outcome(succeeds=False))

        assert self.state.logs[-1].message == "Code Push failed"
        assert self.state.logs[-1].level == LogEntryLevel.ERROR
        assert self.state.run.status == RunStatus.failed

    def test_only_one_step_runs(self):
        self.state.start_run()
        with pytest.raises(InvalidTransitionError):
            self.state.begin_step(1)
        assert self.state.running_count == 1

    def test_begin_running_step_is_noop(self):
        self.state.start_run()
        before = len(self.changes)
        self.state.begin_step(0)
        assert len(self.changes) == before

    def test_complete_pending_step_rejected(self):
        self.state.start_run()
        with pytest.raises(InvalidTransitionError):
            self.state.complete_step(2, _outcome())

    def test_finished_at_set_after_last_step(self):
        self.state.start_run()
        for index in range(4):
            self.state.begin_step(index)
            self.state.complete_step(index, _outcome())
            if index < 3:
                assert self.state.finished_at is None

        assert self.state.finished_at is not None
        assert self.state.run.status == RunStatus.success
        assert not self.state.in_progress

    def test_unknown_step_index(self):
        self.state.start_run()
        with pytest.raises(IndexError):
            self.state.begin_step(4)

    def test_log_buffer_keeps_most_recent(self):
        self.state.start_run()
        for i in range(80):
            self.state.add_log(LogEntryLevel.INFO, f"line {i}")

        logs = self.state.logs
        assert len(logs) == 50
        assert logs[-1].message == "line 79"
        assert logs[0].message == "line 30"
        ids = [entry.id for entry in logs]
        assert ids == sorted(ids)

    def test_resume_continues_ids(self):
        self.state.resume(last_run_id=9, last_step_id=36, last_log_id=400)
        self.state.start_run()

        assert self.state.run.id == 10
        assert self.state.steps[0].id == 37
        assert self.state.logs[0].id == 401

    def test_resume_after_start_rejected(self):
        self.state.start_run()
        with pytest.raises(RuntimeError):
            self.state.resume(last_run_id=3)

    def test_reads_are_copies(self):
        self.state.start_run()
        self.state.steps[0].status = StepStatus.failed
        assert self.state.steps[0].status == StepStatus.running

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            RunState(log_capacity=0)
