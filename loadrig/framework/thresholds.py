"""
Threshold evaluation for loadrig.

Thresholds are pass/fail criteria over aggregated metrics, written as
"<aggregation> <operator> <number>" (for example "p(95)<500" or
"rate<0.01") and grouped per metric:

    thresholds:
      http_req_duration: ["p(95)<500", "avg<200"]
      http_req_failed:
        - threshold: "rate<0.05"
          abort_on_fail: true
          delay_abort_eval: 30s
"""

import logging
import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from .metrics import BUILTIN_METRICS, MetricsSnapshot, metric_base_name, parse_percentile
from .models import MetricType
from .scheduler import parse_duration

logger = logging.getLogger(__name__)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

AGGREGATIONS = ["count", "rate", "value", "avg", "min", "max", "med", "p(N)"]

APPLICABLE_AGGREGATIONS: dict[MetricType, set[str]] = {
    MetricType.COUNTER: {"count", "rate"},
    MetricType.RATE: {"rate"},
    MetricType.TREND: {"avg", "min", "max", "med", "count", "p(N)"},
    MetricType.GAUGE: {"value", "min", "max"},
}

_EXPRESSION = re.compile(
    r"^\s*(count|rate|value|avg|min|max|med|p\(\s*\d+(?:\.\d+)?\s*\))"
    r"\s*(<=|>=|==|!=|<|>)\s*"
    r"([-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)\s*$"
)


class ThresholdError(ValueError):
    """Raised for malformed threshold expressions or definitions."""


def parse_threshold_expression(expression: str) -> tuple[str, str, float]:
    """Parse a threshold expression.

    Args:
        expression: Expression such as "p(95)<500"

    Returns:
        Tuple of (aggregation, operator, value)

    Raises:
        ThresholdError: If the expression does not follow the grammar
    """
    if not isinstance(expression, str):
        raise ThresholdError(f"Threshold expression must be a string, got {expression!r}")

    match = _EXPRESSION.match(expression)
    if not match:
        raise ThresholdError(f"Invalid threshold expression: {expression!r}")

    aggregation = re.sub(r"\s+", "", match.group(1))
    if aggregation.startswith("p(") and parse_percentile(aggregation) is None:
        raise ThresholdError(f"Percentile out of range in threshold: {expression!r}")
    return aggregation, match.group(2), float(match.group(3))


def aggregation_kind(aggregation: str) -> str:
    """Normalize p(95), p(99.9), ... to "p(N)"."""
    return "p(N)" if aggregation.startswith("p(") else aggregation


def is_applicable(aggregation: str, metric_type: MetricType) -> bool:
    """Whether an aggregation makes sense for a metric type."""
    return aggregation_kind(aggregation) in APPLICABLE_AGGREGATIONS[metric_type]


@dataclass(frozen=True)
class ThresholdSpec:
    """
    One parsed threshold.

    Attributes:
        metric: Metric name, optionally with a tag selector
        expression: Original expression text
        aggregation: Aggregation to compare (count, rate, p(95), ...)
        operator: Comparison operator
        value: Right-hand side of the comparison
        abort_on_fail: Stop the run early when an interim evaluation fails
        delay_abort_eval: Seconds into the run before abort checks start
    """

    metric: str
    expression: str
    aggregation: str
    operator: str
    value: float
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    @classmethod
    def parse(
        cls,
        metric: str,
        definition: Union[str, dict[str, Any]],
    ) -> "ThresholdSpec":
        """Create a ThresholdSpec from its configuration form.

        Args:
            metric: Metric name the threshold applies to
            definition: Expression string, or a dict with "threshold" and
                optional "abort_on_fail" and "delay_abort_eval" keys

        Raises:
            ThresholdError: If the definition is malformed, or the
                aggregation does not apply to a built-in metric
        """
        if isinstance(definition, dict):
            expression = definition.get("threshold")
            abort_on_fail = bool(definition.get("abort_on_fail", False))
            try:
                delay = parse_duration(definition.get("delay_abort_eval", 0))
            except ValueError as e:
                raise ThresholdError(f"{metric}: {e}") from e
        else:
            expression = definition
            abort_on_fail = False
            delay = 0.0

        aggregation, op, value = parse_threshold_expression(expression)

        builtin_type = BUILTIN_METRICS.get(metric_base_name(metric))
        if builtin_type is not None and not is_applicable(aggregation, builtin_type):
            raise ThresholdError(
                f"{metric}: aggregation '{aggregation}' does not apply to "
                f"{builtin_type.value} metrics"
            )

        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=aggregation,
            operator=op,
            value=value,
            abort_on_fail=abort_on_fail,
            delay_abort_eval=delay,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "threshold": self.expression,
            "abort_on_fail": self.abort_on_fail,
            "delay_abort_eval": self.delay_abort_eval,
        }


def parse_thresholds(config: dict[str, Any]) -> list[ThresholdSpec]:
    """Parse the "thresholds" section of a run configuration.

    Raises:
        ThresholdError: On the first malformed definition
    """
    specs = []
    for metric, definitions in (config or {}).items():
        if isinstance(definitions, (str, dict)):
            definitions = [definitions]
        for definition in definitions:
            specs.append(ThresholdSpec.parse(metric, definition))
    return specs


@dataclass
class ExpressionResult:
    """Outcome of one threshold expression."""

    expression: str
    observed: float
    passed: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "expression": self.expression,
            "observed": round(self.observed, 4),
            "passed": self.passed,
        }
        if self.reason:
            result["reason"] = self.reason
        return result


@dataclass
class ThresholdOutcome:
    """Combined outcome of every threshold defined on one metric."""

    metric: str
    results: list[ExpressionResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "results": [result.to_dict() for result in self.results],
        }


class ThresholdEvaluator:
    """
    Evaluates thresholds against metric snapshots.

    Each threshold is evaluated independently. A metric that never received
    data is evaluated against zero values, so "count==0" passes until the
    first increment.
    """

    def __init__(self, thresholds: list[ThresholdSpec]):
        self.thresholds = list(thresholds)

    @property
    def has_abort_thresholds(self) -> bool:
        return any(spec.abort_on_fail for spec in self.thresholds)

    def evaluate_one(self, spec: ThresholdSpec, snapshot: MetricsSnapshot) -> ExpressionResult:
        """Evaluate a single threshold."""
        summary = snapshot.get(spec.metric)
        if summary is None:
            observed = 0.0
        elif not is_applicable(spec.aggregation, summary.metric_type):
            return ExpressionResult(
                expression=spec.expression,
                observed=0.0,
                passed=False,
                reason=(
                    f"aggregation '{spec.aggregation}' does not apply to "
                    f"{summary.metric_type.value} metric '{spec.metric}'"
                ),
            )
        else:
            try:
                observed = summary.get(spec.aggregation)
            except KeyError as e:
                return ExpressionResult(
                    expression=spec.expression, observed=0.0, passed=False, reason=str(e)
                )

        passed = OPERATORS[spec.operator](observed, spec.value)
        reason = None
        if not passed:
            reason = f"{spec.aggregation}={observed:g} violates {spec.expression}"
        return ExpressionResult(
            expression=spec.expression, observed=observed, passed=passed, reason=reason
        )

    def evaluate(self, snapshot: MetricsSnapshot) -> dict[str, ThresholdOutcome]:
        """Evaluate every threshold.

        Returns:
            Outcomes keyed by metric name, in definition order
        """
        outcomes: dict[str, ThresholdOutcome] = {}
        for spec in self.thresholds:
            outcome = outcomes.setdefault(spec.metric, ThresholdOutcome(metric=spec.metric))
            result = self.evaluate_one(spec, snapshot)
            outcome.results.append(result)
            if not result.passed:
                logger.debug(f"Threshold failed on {spec.metric}: {result.reason}")
        return outcomes

    def breached_abort_thresholds(
        self,
        snapshot: MetricsSnapshot,
        elapsed_seconds: float,
    ) -> list[ThresholdSpec]:
        """Abort-enabled thresholds that currently fail.

        Thresholds whose delay_abort_eval has not yet elapsed are skipped.
        """
        breached = []
        for spec in self.thresholds:
            if not spec.abort_on_fail or elapsed_seconds < spec.delay_abort_eval:
                continue
            if not self.evaluate_one(spec, snapshot).passed:
                breached.append(spec)
        return breached


def all_passed(outcomes: dict[str, ThresholdOutcome]) -> bool:
    """Whether every evaluated threshold passed."""
    return all(outcome.passed for outcome in outcomes.values())
