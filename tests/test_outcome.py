import random

import pytest

from flowops.models import LogEntryLevel
from flowops.outcome import OutcomeGenerator
from flowops.stages import STAGES


class TestOutcomeGenerator:
    """Test the per-stage outcome draws."""

    def test_success_outcome(self, stub_random):
        generator = OutcomeGenerator(stub_random(0.99, integer=3))
        outcome = generator.decide(STAGES[0])

        assert outcome.succeeds is True
        assert outcome.duration_seconds == 3
        assert [line.message for line in outcome.log_lines] == list(STAGES[0].log_templates)
        assert all(line.level == LogEntryLevel.INFO for line in outcome.log_lines)

    def test_lines_spread_over_window(self, stub_random):
        generator = OutcomeGenerator(stub_random(), log_window=2.0)
        outcome = generator.decide(STAGES[0])

        offsets = [line.offset_seconds for line in outcome.log_lines]
        assert offsets == pytest.approx([0.5, 1.0, 1.5, 2.0])
        assert outcome.window_seconds == pytest.approx(2.0)

    def test_failure_appends_error_line(self, stub_random):
        generator = OutcomeGenerator(stub_random(0.0))
        outcome = generator.decide(STAGES[1])

        assert outcome.succeeds is False
        last = outcome.log_lines[-1]
        assert last.level == LogEntryLevel.ERROR
        assert last.message == STAGES[1].failure_templates[0]
        assert last.offset_seconds == outcome.window_seconds
        assert len(outcome.log_lines) == len(STAGES[1].log_templates) + 1

    def test_probability_boundaries(self):
        always = OutcomeGenerator(random.Random(1), failure_probability=0.0)
        never = OutcomeGenerator(random.Random(1), failure_probability=1.0)
        for _ in range(100):
            assert always.decide(STAGES[2]).succeeds
            assert not never.decide(STAGES[2]).succeeds

    def test_duration_within_range(self):
        generator = OutcomeGenerator(random.Random(42), duration_range=(2, 4))
        durations = {generator.decide(STAGES[3]).duration_seconds for _ in range(200)}
        assert durations <= {2, 3, 4}

    def test_seeded_generators_agree(self):
        first = OutcomeGenerator(random.Random(7))
        second = OutcomeGenerator(random.Random(7))
        for stage in STAGES:
            assert first.decide(stage) == second.decide(stage)

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            OutcomeGenerator(failure_probability=1.5)
        with pytest.raises(ValueError):
            OutcomeGenerator(duration_range=(5, 2))
