"""
Ramp-profile scheduling for loadrig.

This module turns an ordered list of stages into the desired number of
virtual users at any instant of a run.
"""

import math
import re
from typing import Optional, Sequence, Union

from .models import Stage

INTERPOLATION_LINEAR = "linear"
INTERPOLATION_STEP = "step"
VALID_INTERPOLATIONS = [INTERPOLATION_LINEAR, INTERPOLATION_STEP]

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_MULTIPLIERS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration to seconds.

    Args:
        value: Duration string (e.g., "500ms", "30s", "1m30s", "2h") or a
            number of seconds

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the value is not a recognisable duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip().lower()
    if not text:
        raise ValueError("Invalid duration: empty string")

    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ValueError(f"Invalid duration: {value!r}")
        return seconds

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_MULTIPLIERS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total


def validate_stages(
    stages: Sequence[Stage],
    start_target: int = 0,
    interpolation: str = INTERPOLATION_LINEAR,
) -> list[str]:
    """Validate a ramp profile.

    Args:
        stages: Ordered stages
        start_target: Virtual user count at elapsed time zero
        interpolation: "linear" or "step"

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    if not stages:
        errors.append("stage list must not be empty")
    for index, stage in enumerate(stages):
        if stage.duration < 0:
            errors.append(f"stages[{index}]: duration must be non-negative, got {stage.duration}")
        if stage.target < 0:
            errors.append(f"stages[{index}]: target must be non-negative, got {stage.target}")
    if start_target < 0:
        errors.append(f"start_target must be non-negative, got {start_target}")
    if interpolation not in VALID_INTERPOLATIONS:
        errors.append(
            f"interpolation must be one of {VALID_INTERPOLATIONS}, got {interpolation!r}"
        )
    return errors


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


class RampingSchedule:
    """
    Computes target concurrency over time from an ordered stage list.

    In linear mode the target moves from the previous stage's target (or
    start_target for the first stage) to the stage's own target across the
    stage's duration. In step mode each stage's target applies for the whole
    stage. Zero-length stages jump instantly.

    Example:
        schedule = RampingSchedule([Stage(10, 10), Stage(10, 100)])
        schedule.concurrency_at(15)  # 55
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        start_target: int = 0,
        interpolation: str = INTERPOLATION_LINEAR,
    ):
        """Initialize the schedule.

        Args:
            stages: Ordered stages
            start_target: Virtual user count at elapsed time zero
            interpolation: "linear" or "step"

        Raises:
            ValueError: If the stage list is malformed
        """
        errors = validate_stages(stages, start_target, interpolation)
        if errors:
            raise ValueError("Invalid ramp profile: " + "; ".join(errors))

        self.stages = tuple(stages)
        self.start_target = start_target
        self.interpolation = interpolation

    @property
    def total_duration(self) -> float:
        """Sum of all stage durations in seconds."""
        return sum(stage.duration for stage in self.stages)

    @property
    def max_target(self) -> int:
        """Highest concurrency the schedule ever asks for."""
        return max([self.start_target] + [stage.target for stage in self.stages])

    def boundaries(self) -> list[tuple[float, int]]:
        """List of (elapsed_seconds, target) at every stage boundary."""
        points = [(0.0, self.start_target)]
        elapsed = 0.0
        for stage in self.stages:
            elapsed += stage.duration
            points.append((elapsed, stage.target))
        return points

    def stage_at(self, elapsed: float) -> Optional[tuple[int, Stage, int]]:
        """Find the stage active at a point in time.

        Args:
            elapsed: Seconds since the schedule started

        Returns:
            Tuple of (stage_index, stage, previous_target), or None when
            elapsed is before the start or past the end of the schedule
        """
        if elapsed < 0:
            return None

        stage_start = 0.0
        previous_target = self.start_target
        for index, stage in enumerate(self.stages):
            stage_end = stage_start + stage.duration
            if elapsed < stage_end:
                return index, stage, previous_target
            previous_target = stage.target
            stage_start = stage_end
        return None

    def concurrency_at(self, elapsed: float) -> int:
        """Desired virtual user count at a point in time.

        Args:
            elapsed: Seconds since the schedule started

        Returns:
            Target concurrency (start_target before the start, the last
            stage's target after the end)
        """
        if elapsed < 0:
            return self.start_target

        stage_start = 0.0
        previous_target = self.start_target
        for stage in self.stages:
            stage_end = stage_start + stage.duration
            if elapsed < stage_end:
                if self.interpolation == INTERPOLATION_STEP:
                    return stage.target
                fraction = (elapsed - stage_start) / stage.duration
                return round_half_up(
                    previous_target + (stage.target - previous_target) * fraction
                )
            previous_target = stage.target
            stage_start = stage_end

        return self.stages[-1].target

    def is_ramping(self, elapsed: float) -> bool:
        """Whether the target is changing at this point in time."""
        if self.interpolation == INTERPOLATION_STEP:
            return False
        current = self.stage_at(elapsed)
        if current is None:
            return False
        _, stage, previous_target = current
        return stage.target != previous_target

    def is_finished(self, elapsed: float) -> bool:
        """Whether the schedule has run past its last stage."""
        return elapsed >= self.total_duration
