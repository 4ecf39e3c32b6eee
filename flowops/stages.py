"""
Stage definitions and the cyclic Stage Sequencer.

The simulated pipeline always runs the same four stages in the same order:
Code Push, Build, Test and Deploy. Each stage carries the log lines it
prints while it runs and the error lines it may end with when it fails.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

from .models import StageName


@dataclass(frozen=True)
class Stage:
    """
    Immutable definition of a pipeline stage.

    Attributes:
        key (StageName): Stable identifier of the stage
        display_name (str): Name shown on steps and in log lines
        log_templates (tuple[str, ...]): Ordered success-path log messages
        failure_templates (tuple[str, ...]): Messages a failed run picks from
    """

    key: StageName
    display_name: str
    log_templates: Tuple[str, ...]
    failure_templates: Tuple[str, ...]


STAGES: Tuple[Stage, ...] = (
    Stage(
        key=StageName.code_push,
        display_name="Code Push",
        log_templates=(
            "Commit received: refs/heads/main",
            "Validating commit message format",
            "Checking branch protection rules",
            "Code push validated",
        ),
        failure_templates=(
            "Branch protection rule violation",
            "Commit message does not meet requirements",
        ),
    ),
    Stage(
        key=StageName.build,
        display_name="Build",
        log_templates=(
            "Build container started",
            "Installing dependencies...",
            "Running build script",
            "Compiling TypeScript...",
            "Bundling assets...",
            "Build completed successfully",
        ),
        failure_templates=(
            "Build failed: TypeScript compilation error",
            "Build failed: Dependency installation failed",
        ),
    ),
    Stage(
        key=StageName.test,
        display_name="Test",
        log_templates=(
            "Running test suite...",
            "Executing unit tests (127 tests)",
            "Running integration tests (45 tests)",
            "Running E2E tests (12 tests)",
            "All tests passed (184/184)",
        ),
        failure_templates=(
            "Test suite failed: 3 tests failed",
            "Integration test timeout",
        ),
    ),
    Stage(
        key=StageName.deploy,
        display_name="Deploy",
        log_templates=(
            "Preparing deployment package",
            "Uploading artifacts to staging",
            "Running health checks...",
            "Deploying to production servers",
            "Deployment completed",
        ),
        failure_templates=(
            "Deployment failed: Health check timeout",
            "Deployment failed: Server connection error",
        ),
    ),
)


class StageSequencer:
    """
    Cursor over a fixed, cyclic list of stages.

    Advancing past the last stage wraps back to the first one; the caller
    is told about the wrap so it can open a new run.
    """

    def __init__(self, stages: Sequence[Stage] = STAGES) -> None:
        if not stages:
            raise ValueError("A pipeline needs at least one stage")
        self._stages: Tuple[Stage, ...] = tuple(stages)
        self._index = 0

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def is_last(self) -> bool:
        return self._index == len(self._stages) - 1

    def current_stage(self) -> Stage:
        return self._stages[self._index]

    def advance(self) -> bool:
        """Move to the next stage; return True when the cursor wrapped to 0."""
        self._index = (self._index + 1) % len(self._stages)
        return self._index == 0

    def reset(self) -> None:
        self._index = 0
