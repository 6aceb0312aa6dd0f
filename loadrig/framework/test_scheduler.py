"""
Tests for ramp-profile scheduling.

Covers duration parsing, stage validation and the target concurrency a
RampingSchedule produces over time, including property-based checks of
continuity at stage boundaries and monotonicity inside a stage.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from loadrig.framework.models import Stage
from loadrig.framework.scheduler import (
    INTERPOLATION_STEP,
    RampingSchedule,
    parse_duration,
    validate_stages,
)


stages_strategy = st.lists(
    st.builds(
        Stage,
        duration=st.integers(min_value=1, max_value=600).map(float),
        target=st.integers(min_value=0, max_value=500),
    ),
    min_size=1,
    max_size=8,
)
start_targets = st.integers(min_value=0, max_value=100)


class TestParseDuration:
    """Tests for parse_duration."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("500ms", 0.5),
            ("30s", 30.0),
            ("2m", 120.0),
            ("1m30s", 90.0),
            ("2h", 7200.0),
            ("1d", 86400.0),
            ("1.5s", 1.5),
            ("45", 45.0),
            (10, 10.0),
            (2.5, 2.5),
            (" 10S ", 10.0),
        ],
    )
    def test_valid_durations(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "abc", "10x", "s10", "1m 30s", "nan", "inf", True])
    def test_invalid_durations(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestValidateStages:
    """Tests for validate_stages."""

    def test_valid_profile(self):
        assert validate_stages([Stage(10, 5), Stage(0, 10)]) == []

    def test_empty_profile(self):
        errors = validate_stages([])
        assert any("must not be empty" in e for e in errors)

    def test_negative_duration_and_target(self):
        errors = validate_stages([Stage(-1, 5), Stage(10, -3)])
        assert len(errors) == 2
        assert "stages[0]" in errors[0]
        assert "stages[1]" in errors[1]

    def test_unknown_interpolation(self):
        errors = validate_stages([Stage(10, 5)], interpolation="cubic")
        assert any("interpolation" in e for e in errors)

    def test_schedule_rejects_invalid_profile(self):
        with pytest.raises(ValueError, match="Invalid ramp profile"):
            RampingSchedule([Stage(10, -1)])


class TestRampingSchedule:
    """Tests for RampingSchedule.concurrency_at and friends."""

    def test_linear_midpoint_rounds_half_up(self):
        schedule = RampingSchedule([Stage(10, 10), Stage(10, 100)])
        assert schedule.concurrency_at(15) == 55

    def test_ramp_from_zero(self):
        schedule = RampingSchedule([Stage(10, 10)])
        assert schedule.concurrency_at(0) == 0
        assert schedule.concurrency_at(5) == 5
        assert schedule.concurrency_at(9.9) == 10

    def test_start_target(self):
        schedule = RampingSchedule([Stage(10, 20)], start_target=10)
        assert schedule.concurrency_at(0) == 10
        assert schedule.concurrency_at(5) == 15

    def test_before_start_and_after_end(self):
        schedule = RampingSchedule([Stage(10, 10), Stage(10, 40)], start_target=3)
        assert schedule.concurrency_at(-5) == 3
        assert schedule.concurrency_at(20) == 40
        assert schedule.concurrency_at(1000) == 40

    def test_zero_length_stage_jumps(self):
        schedule = RampingSchedule([Stage(10, 10), Stage(0, 100), Stage(10, 100)])
        assert schedule.concurrency_at(9.99) == 10
        assert schedule.concurrency_at(10) == 100
        assert schedule.concurrency_at(15) == 100

    def test_step_interpolation(self):
        schedule = RampingSchedule(
            [Stage(10, 10), Stage(10, 100)], interpolation=INTERPOLATION_STEP
        )
        assert schedule.concurrency_at(0) == 10
        assert schedule.concurrency_at(9.9) == 10
        assert schedule.concurrency_at(10) == 100
        assert not schedule.is_ramping(5)

    def test_ramp_down(self):
        schedule = RampingSchedule([Stage(10, 50), Stage(10, 0)])
        assert schedule.concurrency_at(15) == 25
        assert schedule.concurrency_at(20) == 0

    def test_total_duration_and_max_target(self):
        schedule = RampingSchedule([Stage(30, 50), Stage(60, 50), Stage(30, 0)])
        assert schedule.total_duration == 120
        assert schedule.max_target == 50
        assert schedule.is_finished(120)
        assert not schedule.is_finished(119.9)

    def test_stage_at(self):
        schedule = RampingSchedule([Stage(10, 10), Stage(20, 30)])
        index, stage, previous = schedule.stage_at(15)
        assert index == 1
        assert stage == Stage(20, 30)
        assert previous == 10
        assert schedule.stage_at(-1) is None
        assert schedule.stage_at(30) is None

    def test_is_ramping(self):
        schedule = RampingSchedule([Stage(10, 10), Stage(10, 10), Stage(10, 0)])
        assert schedule.is_ramping(5)
        assert not schedule.is_ramping(15)
        assert schedule.is_ramping(25)
        assert not schedule.is_ramping(40)

    def test_boundaries(self):
        schedule = RampingSchedule([Stage(10, 10), Stage(5, 20)], start_target=2)
        assert schedule.boundaries() == [(0.0, 2), (10.0, 10), (15.0, 20)]


@pytest.mark.property
class TestScheduleProperties:
    """
    Property-based tests for RampingSchedule.
    """

    @given(stages=stages_strategy, start_target=start_targets)
    @settings(max_examples=100)
    def test_boundaries_hit_stage_targets(self, stages, start_target):
        """
        Property: At every stage boundary the schedule yields exactly the
        target of the stage that just ended.
        """
        schedule = RampingSchedule(stages, start_target=start_target)
        for elapsed, target in schedule.boundaries():
            assert schedule.concurrency_at(elapsed) == target

    @given(stages=stages_strategy, start_target=start_targets)
    @settings(max_examples=100)
    def test_last_target_after_end(self, stages, start_target):
        """
        Property: Past the end of the schedule the last stage's target holds.
        """
        schedule = RampingSchedule(stages, start_target=start_target)
        assert schedule.concurrency_at(schedule.total_duration + 1) == stages[-1].target

    @given(
        stages=stages_strategy,
        start_target=start_targets,
        fractions=st.lists(st.floats(min_value=0, max_value=1), min_size=2, max_size=10),
    )
    @settings(max_examples=100)
    def test_monotonic_within_stage(self, stages, start_target, fractions):
        """
        Property: Inside a stage the target moves monotonically from the
        previous target towards the stage target and never leaves that range.
        """
        schedule = RampingSchedule(stages, start_target=start_target)
        stage_start = 0.0
        previous = start_target
        for stage in stages:
            times = sorted(stage_start + f * stage.duration for f in fractions)
            values = [schedule.concurrency_at(t) for t in times]
            low, high = sorted((previous, stage.target))
            assert all(low <= v <= high for v in values)
            if stage.target >= previous:
                assert values == sorted(values)
            else:
                assert values == sorted(values, reverse=True)
            previous = stage.target
            stage_start += stage.duration

    @given(stages=stages_strategy, start_target=start_targets, elapsed=st.floats(-100, 10000))
    @settings(max_examples=100)
    def test_deterministic(self, stages, start_target, elapsed):
        """
        Property: The same inputs always produce the same target.
        """
        first = RampingSchedule(stages, start_target=start_target)
        second = RampingSchedule(list(stages), start_target=start_target)
        assert first.concurrency_at(elapsed) == second.concurrency_at(elapsed)
