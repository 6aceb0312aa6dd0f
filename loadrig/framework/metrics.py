"""
Metrics aggregation for loadrig.

This module provides the concurrency-safe accumulator behind every run:
request samples, named checks and custom counters, rates, trends and
gauges are recorded by many virtual users at once and merged into an
immutable MetricsSnapshot on demand.

Percentiles come from QuantileSketch, a bounded-memory logarithmic
histogram. For a sketch built with relative_accuracy=a, every quantile
estimate is within a * |v| of the exact sample value v at that rank, as long
as the bucket cap has not been reached. Buckets merge by plain addition, so
the estimate does not depend on the order samples arrived in.
"""

import itertools
import logging
import math
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .models import CheckResult, MetricType, RequestSample

logger = logging.getLogger(__name__)

DEFAULT_RELATIVE_ACCURACY = 0.01
DEFAULT_MAX_BUCKETS = 2048
DEFAULT_SHARD_COUNT = 16
DEFAULT_MAX_ERRORS = 100
DEFAULT_MAX_ENDPOINT_TAGS = 500

# Values closer to zero than this land in the zero bucket
MIN_INDEXABLE_VALUE = 1e-9

TREND_PERCENTILES = (90.0, 95.0, 99.0)

BUILTIN_METRICS: dict[str, MetricType] = {
    "http_reqs": MetricType.COUNTER,
    "http_req_duration": MetricType.TREND,
    "http_req_failed": MetricType.RATE,
    "data_sent": MetricType.COUNTER,
    "data_received": MetricType.COUNTER,
    "iterations": MetricType.COUNTER,
    "iteration_duration": MetricType.TREND,
    "iteration_errors": MetricType.COUNTER,
    "checks": MetricType.RATE,
    "vus": MetricType.GAUGE,
    "vus_max": MetricType.GAUGE,
}

# Metrics that carry a per-endpoint breakdown
ENDPOINT_TAG = "name"
# Endpoint tag that absorbs samples once max_endpoint_tags distinct tags exist
OVERFLOW_ENDPOINT_TAG = "__other__"

_METRIC_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_gauge_sequence = itertools.count(1)


class MetricTypeError(Exception):
    """Raised when a metric name is reused with a different type."""

    def __init__(self, name: str, existing: MetricType, requested: MetricType):
        super().__init__(
            f"Metric '{name}' is a {existing.value}, cannot record it as a {requested.value}"
        )
        self.name = name
        self.existing = existing
        self.requested = requested


def metric_base_name(name: str) -> str:
    """Strip a tag selector from a metric name.

    Example:
        metric_base_name("http_req_duration{name:/products}")  # "http_req_duration"
    """
    return name.split("{", 1)[0]


def tagged_metric_name(name: str, tag: str, value: str) -> str:
    """Build the name of a tagged sub-metric."""
    return f"{name}{{{tag}:{value}}}"


def is_valid_metric_name(name: str) -> bool:
    """Check whether a (possibly tagged) metric name is well formed."""
    return bool(_METRIC_NAME.match(metric_base_name(name)))


def parse_percentile(aggregation: str) -> Optional[float]:
    """Parse a percentile aggregation such as "p(95)" or "p(99.9)".

    Returns:
        The percentile as a number between 0 and 100, or None if the
        aggregation is not a percentile
    """
    match = re.fullmatch(r"p\((\d+(?:\.\d+)?)\)", aggregation.strip())
    if not match:
        return None
    percentile = float(match.group(1))
    if percentile > 100:
        return None
    return percentile


def _format_percentile(percentile: float) -> str:
    return f"p({percentile:g})"


class QuantileSketch:
    """
    Streaming quantile estimator over logarithmically sized buckets.

    Positive and negative values are kept in separate bucket maps keyed by
    ceil(log_gamma(|v|)) with gamma = (1 + a) / (1 - a); values near zero
    are counted separately. Memory is bounded by max_buckets per sign: once
    exceeded, the buckets closest to zero are collapsed together, which only
    affects accuracy for the lowest quantiles.
    """

    def __init__(
        self,
        relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY,
        max_buckets: int = DEFAULT_MAX_BUCKETS,
    ):
        if not 0 < relative_accuracy < 1:
            raise ValueError("relative_accuracy must be between 0 and 1")
        if max_buckets < 1:
            raise ValueError("max_buckets must be positive")

        self.relative_accuracy = relative_accuracy
        self.max_buckets = max_buckets
        self._gamma = (1 + relative_accuracy) / (1 - relative_accuracy)
        self._log_gamma = math.log(self._gamma)
        self._positive: dict[int, int] = {}
        self._negative: dict[int, int] = {}
        self._zero_count = 0
        self.count = 0
        self.min = math.inf
        self.max = -math.inf

    def _key(self, magnitude: float) -> int:
        return math.ceil(math.log(magnitude) / self._log_gamma)

    def _value(self, key: int) -> float:
        return 2 * self._gamma ** key / (self._gamma + 1)

    def _collapse(self, buckets: dict[int, int]) -> None:
        while len(buckets) > self.max_buckets:
            lowest, second = sorted(buckets)[:2]
            buckets[second] += buckets.pop(lowest)

    def add(self, value: float, weight: int = 1) -> None:
        """Add a value to the sketch."""
        if weight <= 0:
            return
        if value > MIN_INDEXABLE_VALUE:
            key = self._key(value)
            self._positive[key] = self._positive.get(key, 0) + weight
            self._collapse(self._positive)
        elif value < -MIN_INDEXABLE_VALUE:
            key = self._key(-value)
            self._negative[key] = self._negative.get(key, 0) + weight
            self._collapse(self._negative)
        else:
            self._zero_count += weight

        self.count += weight
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def merge(self, other: "QuantileSketch") -> None:
        """Fold another sketch with the same accuracy into this one."""
        if not math.isclose(self.relative_accuracy, other.relative_accuracy):
            raise ValueError("Cannot merge sketches with different relative accuracy")

        for key, count in other._positive.items():
            self._positive[key] = self._positive.get(key, 0) + count
        for key, count in other._negative.items():
            self._negative[key] = self._negative.get(key, 0) + count
        self._collapse(self._positive)
        self._collapse(self._negative)
        self._zero_count += other._zero_count
        self.count += other.count
        self.min = min(self.min, other.min)
        self.max = max(self.max, other.max)

    def copy(self) -> "QuantileSketch":
        """Return an independent copy of this sketch."""
        clone = QuantileSketch(self.relative_accuracy, self.max_buckets)
        clone._positive = dict(self._positive)
        clone._negative = dict(self._negative)
        clone._zero_count = self._zero_count
        clone.count = self.count
        clone.min = self.min
        clone.max = self.max
        return clone

    def quantile(self, q: float) -> float:
        """Estimate the q-quantile (0 <= q <= 1).

        Returns:
            Estimated value, 0.0 when the sketch is empty
        """
        if not 0 <= q <= 1:
            raise ValueError("quantile must be between 0 and 1")
        if self.count == 0:
            return 0.0
        if q == 0:
            return self.min
        if q == 1:
            return self.max

        rank = q * (self.count - 1)
        cumulative = 0

        for key in sorted(self._negative, reverse=True):
            cumulative += self._negative[key]
            if cumulative > rank:
                return self._clamp(-self._value(key))

        cumulative += self._zero_count
        if cumulative > rank:
            return self._clamp(0.0)

        for key in sorted(self._positive):
            cumulative += self._positive[key]
            if cumulative > rank:
                return self._clamp(self._value(key))

        return self.max

    def _clamp(self, value: float) -> float:
        return min(max(value, self.min), self.max)

    @property
    def bucket_count(self) -> int:
        """Number of non-empty buckets held in memory."""
        return len(self._positive) + len(self._negative) + (1 if self._zero_count else 0)


class CounterAccumulator:
    """Monotonic sum."""

    metric_type = MetricType.COUNTER

    def __init__(self):
        self.total = 0.0

    def add(self, value: float) -> None:
        if value < 0:
            raise ValueError(f"Counter increments must be non-negative, got {value}")
        self.total += value

    def merge(self, other: "CounterAccumulator") -> None:
        self.total += other.total

    def copy(self) -> "CounterAccumulator":
        clone = CounterAccumulator()
        clone.total = self.total
        return clone

    def summarize(self, elapsed_seconds: Optional[float]) -> dict[str, float]:
        rate = self.total / elapsed_seconds if elapsed_seconds else 0.0
        return {"count": self.total, "rate": rate}


class RateAccumulator:
    """Fraction of samples that were non-zero."""

    metric_type = MetricType.RATE

    def __init__(self):
        self.passes = 0
        self.total = 0

    def add(self, value: Union[bool, float]) -> None:
        self.total += 1
        if value:
            self.passes += 1

    def merge(self, other: "RateAccumulator") -> None:
        self.passes += other.passes
        self.total += other.total

    def copy(self) -> "RateAccumulator":
        clone = RateAccumulator()
        clone.passes = self.passes
        clone.total = self.total
        return clone

    def summarize(self, elapsed_seconds: Optional[float]) -> dict[str, float]:
        return {
            "rate": self.passes / self.total if self.total else 0.0,
            "passes": self.passes,
            "fails": self.total - self.passes,
        }


class TrendAccumulator:
    """Count, sum and streaming percentiles of recorded values."""

    metric_type = MetricType.TREND

    def __init__(
        self,
        relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY,
        max_buckets: int = DEFAULT_MAX_BUCKETS,
    ):
        self.sketch = QuantileSketch(relative_accuracy, max_buckets)
        self.sum = 0.0

    def add(self, value: float) -> None:
        self.sketch.add(value)
        self.sum += value

    def merge(self, other: "TrendAccumulator") -> None:
        self.sketch.merge(other.sketch)
        self.sum += other.sum

    def copy(self) -> "TrendAccumulator":
        clone = TrendAccumulator(self.sketch.relative_accuracy, self.sketch.max_buckets)
        clone.sketch = self.sketch.copy()
        clone.sum = self.sum
        return clone

    def summarize(self, elapsed_seconds: Optional[float]) -> dict[str, float]:
        count = self.sketch.count
        if count == 0:
            values = {"count": 0, "avg": 0.0, "min": 0.0, "med": 0.0, "max": 0.0}
        else:
            values = {
                "count": count,
                "avg": self.sum / count,
                "min": self.sketch.min,
                "med": self.sketch.quantile(0.5),
                "max": self.sketch.max,
            }
        for percentile in TREND_PERCENTILES:
            values[_format_percentile(percentile)] = self.sketch.quantile(percentile / 100)
        return values


class GaugeAccumulator:
    """Most recent value plus the observed extremes."""

    metric_type = MetricType.GAUGE

    def __init__(self):
        self.value = 0.0
        self.min = math.inf
        self.max = -math.inf
        self.sequence = 0

    def add(self, value: float) -> None:
        self.value = value
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.sequence = next(_gauge_sequence)

    def merge(self, other: "GaugeAccumulator") -> None:
        if other.sequence > self.sequence:
            self.value = other.value
            self.sequence = other.sequence
        self.min = min(self.min, other.min)
        self.max = max(self.max, other.max)

    def copy(self) -> "GaugeAccumulator":
        clone = GaugeAccumulator()
        clone.value = self.value
        clone.min = self.min
        clone.max = self.max
        clone.sequence = self.sequence
        return clone

    def summarize(self, elapsed_seconds: Optional[float]) -> dict[str, float]:
        if self.sequence == 0:
            return {"value": 0.0, "min": 0.0, "max": 0.0}
        return {"value": self.value, "min": self.min, "max": self.max}


Accumulator = Union[CounterAccumulator, RateAccumulator, TrendAccumulator, GaugeAccumulator]


@dataclass
class MetricSummary:
    """
    Aggregated view of one metric.

    Attributes:
        name: Metric name, possibly with a tag selector
        metric_type: Type of the metric
        values: Aggregations keyed by name (count, rate, avg, p(95), ...)
    """

    name: str
    metric_type: MetricType
    values: dict[str, float] = field(default_factory=dict)
    sketch: Optional[QuantileSketch] = field(default=None, repr=False, compare=False)

    def get(self, aggregation: str) -> float:
        """Look up an aggregation, computing arbitrary percentiles on demand.

        Raises:
            KeyError: If the aggregation does not exist for this metric type
        """
        if aggregation in self.values:
            return self.values[aggregation]

        percentile = parse_percentile(aggregation)
        if percentile is not None and self.metric_type == MetricType.TREND:
            if self.sketch is None:
                return 0.0
            return self.sketch.quantile(percentile / 100)

        raise KeyError(
            f"Aggregation '{aggregation}' is not available for {self.metric_type.value} "
            f"metric '{self.name}'"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "type": self.metric_type.value,
            "values": {key: round(value, 4) for key, value in self.values.items()},
        }


@dataclass
class CheckSummary:
    """Pass/fail counts of a named check."""

    name: str
    passes: int = 0
    fails: int = 0

    @property
    def total(self) -> int:
        return self.passes + self.fails

    @property
    def pass_rate(self) -> float:
        """Fraction of evaluations that passed."""
        if self.total == 0:
            return 0.0
        return self.passes / self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "passes": self.passes,
            "fails": self.fails,
            "pass_rate": round(self.pass_rate, 4),
        }


@dataclass
class MetricsSnapshot:
    """
    Immutable point-in-time view of everything a run recorded.

    Attributes:
        elapsed_seconds: Run time the per-second rates were computed over
        metrics: Summaries keyed by metric name
        checks: Check summaries keyed by check name
        errors: Most recent workload error messages
    """

    elapsed_seconds: Optional[float] = None
    metrics: dict[str, MetricSummary] = field(default_factory=dict)
    checks: dict[str, CheckSummary] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def get(self, name: str) -> Optional[MetricSummary]:
        """Get a metric summary by name."""
        return self.metrics.get(name)

    def value(self, name: str, aggregation: str, default: float = 0.0) -> float:
        """Get one aggregation of a metric, or default if it was never recorded."""
        summary = self.metrics.get(name)
        if summary is None:
            return default
        try:
            return summary.get(aggregation)
        except KeyError:
            return default

    def endpoints(self) -> dict[str, dict[str, float]]:
        """Per-endpoint duration and failure breakdown."""
        prefix = f"http_req_duration{{{ENDPOINT_TAG}:"
        breakdown: dict[str, dict[str, float]] = {}
        for name, summary in self.metrics.items():
            if not name.startswith(prefix):
                continue
            tag = name[len(prefix):-1]
            failed = self.metrics.get(tagged_metric_name("http_req_failed", ENDPOINT_TAG, tag))
            breakdown[tag] = {
                "count": summary.values.get("count", 0),
                "avg": summary.values.get("avg", 0.0),
                "p(95)": summary.values.get("p(95)", 0.0),
                "failed_rate": failed.values.get("rate", 0.0) if failed else 0.0,
            }
        return dict(sorted(breakdown.items()))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "elapsed_seconds": (
                round(self.elapsed_seconds, 3) if self.elapsed_seconds is not None else None
            ),
            "metrics": {name: summary.to_dict() for name, summary in sorted(self.metrics.items())},
            "checks": {name: summary.to_dict() for name, summary in self.checks.items()},
            "errors": list(self.errors),
        }


class _Shard:
    """One lock-protected slice of the aggregator's state."""

    def __init__(self):
        self.lock = threading.Lock()
        self.accumulators: dict[str, Accumulator] = {}
        self.checks: dict[str, list[int]] = {}


class MetricsAggregator:
    """
    Concurrency-safe accumulator for everything a run records.

    Writers are spread across shards by a shard key (normally the virtual
    user id), each shard guarded by its own lock, so concurrent virtual users
    rarely contend. snapshot() copies every shard under its lock and merges
    the copies in shard order; every update is commutative, so the result is
    independent of how writes interleaved and repeated snapshots without
    writes in between are identical.

    Example usage:
        aggregator = MetricsAggregator()
        aggregator.record_sample(sample, shard_key=vu_id)
        aggregator.record_check("status is 200", True, shard_key=vu_id)
        aggregator.record_counter("orders_created", 1, shard_key=vu_id)
        snapshot = aggregator.snapshot(elapsed_seconds=60)
    """

    def __init__(
        self,
        shard_count: int = DEFAULT_SHARD_COUNT,
        relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY,
        max_buckets: int = DEFAULT_MAX_BUCKETS,
        max_errors: int = DEFAULT_MAX_ERRORS,
        max_endpoint_tags: int = DEFAULT_MAX_ENDPOINT_TAGS,
    ):
        """Initialize the aggregator.

        Args:
            shard_count: Number of independently locked shards
            relative_accuracy: Relative error bound of trend percentiles
            max_buckets: Memory cap of each trend's quantile sketch
            max_errors: How many recent workload errors to retain
            max_endpoint_tags: Distinct endpoint tags tracked before further
                tags are folded into OVERFLOW_ENDPOINT_TAG
        """
        if shard_count < 1:
            raise ValueError("shard_count must be positive")

        self.relative_accuracy = relative_accuracy
        self.max_buckets = max_buckets
        self._shards = [_Shard() for _ in range(shard_count)]
        self._types: dict[str, MetricType] = dict(BUILTIN_METRICS)
        self._types_lock = threading.Lock()
        self._errors: deque[str] = deque(maxlen=max_errors)
        self._errors_lock = threading.Lock()
        self.max_endpoint_tags = max_endpoint_tags
        self._endpoint_tags: set[str] = set()
        self._endpoint_tags_lock = threading.Lock()

    def register(self, name: str, metric_type: MetricType) -> MetricType:
        """Declare a metric, or confirm the type of an existing one.

        Tagged names inherit the type of their base metric.

        Raises:
            ValueError: If the name is malformed
            MetricTypeError: If the name already has a different type
        """
        if not is_valid_metric_name(name):
            raise ValueError(f"Invalid metric name: {name!r}")

        base = metric_base_name(name)
        with self._types_lock:
            existing = self._types.get(base)
            if existing is None:
                self._types[base] = metric_type
                logger.debug(f"Registered {metric_type.value} metric '{base}'")
            elif existing != metric_type:
                raise MetricTypeError(base, existing, metric_type)
        return metric_type

    def metric_type(self, name: str) -> Optional[MetricType]:
        """Type of a metric, or None if it was never registered."""
        with self._types_lock:
            return self._types.get(metric_base_name(name))

    def _shard(self, shard_key: Optional[Any]) -> _Shard:
        if shard_key is None:
            shard_key = threading.get_ident()
        return self._shards[hash(shard_key) % len(self._shards)]

    def _new_accumulator(self, metric_type: MetricType) -> Accumulator:
        if metric_type == MetricType.COUNTER:
            return CounterAccumulator()
        if metric_type == MetricType.RATE:
            return RateAccumulator()
        if metric_type == MetricType.TREND:
            return TrendAccumulator(self.relative_accuracy, self.max_buckets)
        return GaugeAccumulator()

    def _accumulator(self, shard: _Shard, name: str, metric_type: MetricType) -> Accumulator:
        # Caller holds shard.lock
        accumulator = shard.accumulators.get(name)
        if accumulator is None:
            accumulator = self._new_accumulator(metric_type)
            shard.accumulators[name] = accumulator
        return accumulator

    def _record(
        self,
        name: str,
        metric_type: MetricType,
        value: Union[bool, float],
        shard_key: Optional[Any],
    ) -> None:
        self.register(name, metric_type)
        shard = self._shard(shard_key)
        with shard.lock:
            self._accumulator(shard, name, metric_type).add(value)

    def _endpoint_tag(self, tag: str) -> str:
        with self._endpoint_tags_lock:
            if tag in self._endpoint_tags:
                return tag
            if len(self._endpoint_tags) < self.max_endpoint_tags:
                self._endpoint_tags.add(tag)
                return tag
        return OVERFLOW_ENDPOINT_TAG

    def record_sample(self, sample: RequestSample, shard_key: Optional[Any] = None) -> None:
        """Record one HTTP request outcome into the built-in HTTP metrics."""
        tag = self._endpoint_tag(sample.endpoint_tag)
        duration_name = tagged_metric_name("http_req_duration", ENDPOINT_TAG, tag)
        failed_name = tagged_metric_name("http_req_failed", ENDPOINT_TAG, tag)

        shard = self._shard(shard_key)
        with shard.lock:
            self._accumulator(shard, "http_reqs", MetricType.COUNTER).add(1)
            self._accumulator(shard, "http_req_duration", MetricType.TREND).add(sample.duration_ms)
            self._accumulator(shard, "http_req_failed", MetricType.RATE).add(sample.failed)
            self._accumulator(shard, "data_sent", MetricType.COUNTER).add(sample.bytes_sent)
            self._accumulator(shard, "data_received", MetricType.COUNTER).add(sample.bytes_received)
            self._accumulator(shard, duration_name, MetricType.TREND).add(sample.duration_ms)
            self._accumulator(shard, failed_name, MetricType.RATE).add(sample.failed)

    def record_check(self, name: str, passed: bool, shard_key: Optional[Any] = None) -> None:
        """Record the outcome of a named check."""
        shard = self._shard(shard_key)
        with shard.lock:
            counts = shard.checks.setdefault(name, [0, 0])
            counts[0 if passed else 1] += 1
            self._accumulator(shard, "checks", MetricType.RATE).add(bool(passed))

    def record_check_result(self, result: CheckResult, shard_key: Optional[Any] = None) -> None:
        """Record a CheckResult."""
        self.record_check(result.name, result.passed, shard_key)

    def record_counter(self, name: str, delta: float = 1, shard_key: Optional[Any] = None) -> None:
        """Increment a counter.

        Raises:
            ValueError: If delta is negative
        """
        if delta < 0:
            raise ValueError(f"Counter increments must be non-negative, got {delta}")
        self._record(name, MetricType.COUNTER, delta, shard_key)

    def record_rate(self, name: str, value: Union[bool, float], shard_key: Optional[Any] = None) -> None:
        """Add a sample to a rate metric; truthy values count as passes."""
        self._record(name, MetricType.RATE, value, shard_key)

    def record_trend(self, name: str, value: float, shard_key: Optional[Any] = None) -> None:
        """Add a value to a trend metric."""
        self._record(name, MetricType.TREND, value, shard_key)

    def set_gauge(self, name: str, value: float, shard_key: Optional[Any] = None) -> None:
        """Set the current value of a gauge."""
        self._record(name, MetricType.GAUGE, value, shard_key)

    def record_iteration(
        self,
        duration_ms: float,
        error: Optional[str] = None,
        shard_key: Optional[Any] = None,
    ) -> None:
        """Record the end of a workload iteration.

        Iterations that raised count towards iteration_errors only.
        """
        shard = self._shard(shard_key)
        with shard.lock:
            if error is None:
                self._accumulator(shard, "iterations", MetricType.COUNTER).add(1)
                self._accumulator(shard, "iteration_duration", MetricType.TREND).add(duration_ms)
            else:
                self._accumulator(shard, "iteration_errors", MetricType.COUNTER).add(1)
        if error is not None:
            self.record_error(error)

    def record_error(self, message: str) -> None:
        """Keep a workload error message for the run report."""
        with self._errors_lock:
            self._errors.append(message)

    def snapshot(self, elapsed_seconds: Optional[float] = None) -> MetricsSnapshot:
        """Merge all shards into a point-in-time view.

        Args:
            elapsed_seconds: Run time used for per-second rates; rates are
                reported as 0 when omitted

        Returns:
            MetricsSnapshot that shares no state with the aggregator
        """
        copies: list[tuple[dict[str, Accumulator], dict[str, list[int]]]] = []
        for shard in self._shards:
            with shard.lock:
                copies.append((
                    {name: acc.copy() for name, acc in shard.accumulators.items()},
                    {name: list(counts) for name, counts in shard.checks.items()},
                ))

        merged: dict[str, Accumulator] = {}
        check_counts: dict[str, list[int]] = {}
        for accumulators, checks in copies:
            for name, accumulator in accumulators.items():
                if name in merged:
                    merged[name].merge(accumulator)
                else:
                    merged[name] = accumulator
            for name, counts in checks.items():
                totals = check_counts.setdefault(name, [0, 0])
                totals[0] += counts[0]
                totals[1] += counts[1]

        metrics = {}
        for name in sorted(merged):
            accumulator = merged[name]
            metrics[name] = MetricSummary(
                name=name,
                metric_type=accumulator.metric_type,
                values=accumulator.summarize(elapsed_seconds),
                sketch=accumulator.sketch if isinstance(accumulator, TrendAccumulator) else None,
            )

        checks = {
            name: CheckSummary(name=name, passes=counts[0], fails=counts[1])
            for name, counts in sorted(check_counts.items())
        }

        with self._errors_lock:
            errors = list(self._errors)

        return MetricsSnapshot(
            elapsed_seconds=elapsed_seconds,
            metrics=metrics,
            checks=checks,
            errors=errors,
        )
