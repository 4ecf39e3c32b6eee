import pytest
from pydantic import ValidationError

from flowops.models import (
    ChartSample,
    InvalidTransitionError,
    Run,
    RunStatus,
    Snapshot,
    Step,
    StepStatus,
    derive_run_status,
    validate_transition,
)


class TestRunStatusDerivation:
    """Test the aggregate run status computed from step statuses."""

    def test_all_success(self):
        statuses = [StepStatus.success] * 4
        assert derive_run_status(statuses) == RunStatus.success

    def test_any_failed_wins(self):
        statuses = [StepStatus.success, StepStatus.failed, StepStatus.running, StepStatus.pending]
        assert derive_run_status(statuses) == RunStatus.failed

    def test_running(self):
        statuses = [StepStatus.success, StepStatus.running, StepStatus.pending]
        assert derive_run_status(statuses) == RunStatus.running

    def test_all_pending(self):
        assert derive_run_status([StepStatus.pending] * 4) == RunStatus.pending

    def test_empty_is_pending(self):
        """A run without steps has not succeeded."""
        assert derive_run_status([]) == RunStatus.pending

    def test_failed_then_success_is_failed(self):
        statuses = [StepStatus.failed, StepStatus.success, StepStatus.success, StepStatus.success]
        assert derive_run_status(statuses) == RunStatus.failed

    def test_run_from_steps(self):
        steps = [
            Step(id=1, run_id=7, name="Code Push", status=StepStatus.success),
            Step(id=2, run_id=7, name="Build", status=StepStatus.running),
        ]
        run = Run.from_steps(7, steps)
        assert run.id == 7
        assert run.status == RunStatus.running


class TestStepTransitions:
    """Test the step lifecycle rules."""

    def test_legal_transitions(self):
        validate_transition(StepStatus.pending, StepStatus.running)
        validate_transition(StepStatus.running, StepStatus.success)
        validate_transition(StepStatus.running, StepStatus.failed)

    @pytest.mark.parametrize(
        "current,new",
        [
            (StepStatus.pending, StepStatus.success),
            (StepStatus.pending, StepStatus.failed),
            (StepStatus.success, StepStatus.running),
            (StepStatus.failed, StepStatus.success),
            (StepStatus.running, StepStatus.pending),
        ],
    )
    def test_illegal_transitions(self, current, new):
        with pytest.raises(InvalidTransitionError):
            validate_transition(current, new)

    def test_terminal_states(self):
        assert StepStatus.success.is_terminal
        assert StepStatus.failed.is_terminal
        assert not StepStatus.running.is_terminal
        assert not StepStatus.pending.is_terminal


class TestSerialization:
    """Test camelCase JSON output and field validation."""

    def test_step_dumps_camel_case(self):
        step = Step(id=1, run_id=3, name="Build")
        data = step.model_dump(by_alias=True)
        assert data["runId"] == 3
        assert data["status"] == "pending"
        assert data["duration"] is None

    def test_populate_by_alias(self):
        step = Step.model_validate({"id": 1, "runId": 2, "name": "Test"})
        assert step.run_id == 2

    def test_chart_sample_bounds(self):
        with pytest.raises(ValidationError):
            ChartSample(time="10:00:00", success=101, latency=90)
        with pytest.raises(ValidationError):
            ChartSample(time="10:00:00", success=50, latency=-1)

    def test_snapshot_defaults(self):
        snapshot = Snapshot()
        assert snapshot.run is None
        assert snapshot.steps == []
        assert snapshot.cycle_count == 0
        assert snapshot.model_dump(by_alias=True)["currentStageIndex"] == 0
