"""
Tests for metrics aggregation.

Covers the quantile sketch accuracy bound, typed accumulators, sharded
recording from concurrent writers and snapshot semantics.
"""

import math
import random
import threading
from datetime import datetime, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from loadrig.framework.metrics import (
    OVERFLOW_ENDPOINT_TAG,
    MetricsAggregator,
    MetricTypeError,
    QuantileSketch,
    metric_base_name,
    parse_percentile,
    tagged_metric_name,
)
from loadrig.framework.models import MetricType, RequestSample


def make_sample(
    tag: str = "/products",
    duration_ms: float = 10.0,
    status_code=200,
    error=None,
    bytes_received: int = 100,
) -> RequestSample:
    return RequestSample(
        endpoint_tag=tag,
        method="GET",
        url=f"http://loadrig.test{tag}",
        started_at=datetime.now(timezone.utc),
        duration_ms=duration_ms,
        status_code=status_code,
        error=error,
        expected=error is None and status_code is not None and 200 <= status_code < 400,
        bytes_sent=0,
        bytes_received=bytes_received,
    )


positive_values = st.lists(
    st.floats(min_value=0.001, max_value=1e6, allow_nan=False, allow_infinity=False),
    min_size=1,
    max_size=300,
)
quantiles = st.floats(min_value=0, max_value=1)


class TestHelpers:
    """Tests for metric name helpers."""

    def test_base_name(self):
        assert metric_base_name("http_req_duration{name:/x}") == "http_req_duration"
        assert metric_base_name("checks") == "checks"

    def test_tagged_name(self):
        assert tagged_metric_name("http_req_failed", "name", "/a") == "http_req_failed{name:/a}"

    @pytest.mark.parametrize(
        "aggregation,expected",
        [("p(95)", 95.0), ("p(99.9)", 99.9), ("p(0)", 0.0), ("p(100)", 100.0), ("avg", None), ("p(101)", None)],
    )
    def test_parse_percentile(self, aggregation, expected):
        assert parse_percentile(aggregation) == expected


class TestQuantileSketch:
    """Tests for QuantileSketch."""

    def test_empty_sketch(self):
        sketch = QuantileSketch()
        assert sketch.count == 0
        assert sketch.quantile(0.5) == 0.0

    def test_single_value(self):
        sketch = QuantileSketch()
        sketch.add(42.0)
        for q in (0, 0.5, 0.99, 1):
            assert sketch.quantile(q) == 42.0

    def test_extremes_are_exact(self):
        sketch = QuantileSketch()
        for value in (3.7, 120.4, 0.25, 9000.1):
            sketch.add(value)
        assert sketch.quantile(0) == 0.25
        assert sketch.quantile(1) == 9000.1

    def test_zero_and_negative_values(self):
        sketch = QuantileSketch()
        for value in (-10.0, -1.0, 0.0, 0.0, 5.0):
            sketch.add(value)
        assert sketch.quantile(0) == -10.0
        assert sketch.quantile(0.5) == 0.0
        assert sketch.quantile(0.25) == pytest.approx(-1.0, rel=0.011)

    def test_bucket_cap(self):
        sketch = QuantileSketch(max_buckets=16)
        for i in range(1, 10000):
            sketch.add(float(i))
        assert sketch.bucket_count <= 16
        assert sketch.count == 9999
        assert sketch.quantile(0.99) == pytest.approx(9900, rel=0.011)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            QuantileSketch(relative_accuracy=0)
        with pytest.raises(ValueError):
            QuantileSketch(max_buckets=0)
        with pytest.raises(ValueError):
            QuantileSketch().quantile(1.5)

    def test_merge_requires_same_accuracy(self):
        with pytest.raises(ValueError):
            QuantileSketch(0.01).merge(QuantileSketch(0.02))


@pytest.mark.property
class TestQuantileSketchProperties:
    """
    Property-based tests for the quantile accuracy guarantee.
    """

    @given(values=positive_values, q=quantiles)
    @settings(max_examples=200)
    def test_relative_error_bound(self, values, q):
        """
        Property: Every quantile estimate is within the relative accuracy of
        the exact sample at that rank.
        """
        sketch = QuantileSketch(relative_accuracy=0.01)
        for value in values:
            sketch.add(value)

        exact = sorted(values)[math.floor(q * (len(values) - 1))]
        estimate = sketch.quantile(q)
        assert abs(estimate - exact) <= 0.0101 * exact

    @given(values=positive_values, seed=st.integers(0, 2**32 - 1), split=st.integers(0, 300))
    @settings(max_examples=100)
    def test_merge_is_order_independent(self, values, seed, split):
        """
        Property: Splitting values across sketches in any order and merging
        gives the same estimates as a single sketch.
        """
        shuffled = list(values)
        random.Random(seed).shuffle(shuffled)

        single = QuantileSketch()
        for value in values:
            single.add(value)

        left, right = QuantileSketch(), QuantileSketch()
        for value in shuffled[:split]:
            left.add(value)
        for value in shuffled[split:]:
            right.add(value)
        right.merge(left)

        for q in (0.0, 0.5, 0.9, 0.95, 0.99, 1.0):
            assert right.quantile(q) == single.quantile(q)
        assert right.count == single.count


class TestMetricsAggregator:
    """Tests for MetricsAggregator."""

    def test_http_sample_metrics(self, aggregator):
        for i in range(98):
            aggregator.record_sample(make_sample(duration_ms=10 + i), shard_key=i)
        aggregator.record_sample(make_sample(status_code=500), shard_key=1)
        aggregator.record_sample(make_sample(status_code=None, error="timeout"), shard_key=2)

        snapshot = aggregator.snapshot(elapsed_seconds=10)
        assert snapshot.value("http_reqs", "count") == 100
        assert snapshot.value("http_reqs", "rate") == pytest.approx(10.0)
        assert snapshot.value("http_req_failed", "rate") == pytest.approx(0.02)
        assert snapshot.value("data_received", "count") == 100 * 100
        assert snapshot.get("http_req_duration").metric_type == MetricType.TREND
        assert snapshot.value("http_req_duration", "count") == 100

    def test_per_endpoint_submetrics(self, aggregator):
        aggregator.record_sample(make_sample(tag="/products", duration_ms=20))
        aggregator.record_sample(make_sample(tag="/products", duration_ms=40))
        aggregator.record_sample(make_sample(tag="/users/login", status_code=401))

        snapshot = aggregator.snapshot()
        assert snapshot.value("http_req_duration{name:/products}", "avg") == pytest.approx(30)
        assert snapshot.value("http_req_failed{name:/users/login}", "rate") == 1.0

        endpoints = snapshot.endpoints()
        assert list(endpoints) == ["/products", "/users/login"]
        assert endpoints["/products"]["count"] == 2
        assert endpoints["/products"]["failed_rate"] == 0.0

    def test_checks(self, aggregator):
        aggregator.record_check("status is 200", True)
        aggregator.record_check("status is 200", True)
        aggregator.record_check("status is 200", False)
        aggregator.record_check("has items", True)

        snapshot = aggregator.snapshot()
        check = snapshot.checks["status is 200"]
        assert (check.passes, check.fails) == (2, 1)
        assert check.pass_rate == pytest.approx(2 / 3)
        assert snapshot.value("checks", "rate") == pytest.approx(0.75)

    def test_custom_metrics(self, aggregator):
        aggregator.record_counter("orders_created", 3)
        aggregator.record_counter("orders_created")
        aggregator.record_rate("cache_hit", True)
        aggregator.record_rate("cache_hit", 0)
        aggregator.record_trend("cart_size", 2)
        aggregator.record_trend("cart_size", 4)
        aggregator.set_gauge("queue_depth", 7)
        aggregator.set_gauge("queue_depth", 3)

        snapshot = aggregator.snapshot()
        assert snapshot.value("orders_created", "count") == 4
        assert snapshot.value("cache_hit", "rate") == 0.5
        assert snapshot.value("cart_size", "avg") == 3
        assert snapshot.value("queue_depth", "value") == 3
        assert snapshot.value("queue_depth", "max") == 7

    def test_type_clash_raises(self, aggregator):
        aggregator.record_counter("signups")
        with pytest.raises(MetricTypeError) as exc_info:
            aggregator.record_trend("signups", 1.0)
        assert exc_info.value.existing == MetricType.COUNTER
        with pytest.raises(MetricTypeError):
            aggregator.record_rate("http_reqs", True)

    def test_negative_counter_increment_rejected(self, aggregator):
        with pytest.raises(ValueError):
            aggregator.record_counter("orders_created", -1)

    def test_invalid_metric_name(self, aggregator):
        with pytest.raises(ValueError):
            aggregator.record_counter("bad name")

    def test_iterations_and_errors(self, aggregator):
        aggregator.record_iteration(100.0)
        aggregator.record_iteration(120.0)
        aggregator.record_iteration(5.0, error="ValueError: boom")

        snapshot = aggregator.snapshot()
        assert snapshot.value("iterations", "count") == 2
        assert snapshot.value("iteration_errors", "count") == 1
        assert snapshot.value("iteration_duration", "avg") == pytest.approx(110)
        assert snapshot.errors == ["ValueError: boom"]

    def test_endpoint_tags_are_capped(self):
        aggregator = MetricsAggregator(max_endpoint_tags=2)
        for product_id in range(10):
            aggregator.record_sample(make_sample(tag=f"/products/{product_id}"))
        aggregator.record_sample(make_sample(tag="/products/0"))

        snapshot = aggregator.snapshot()
        endpoints = snapshot.endpoints()
        assert list(endpoints) == ["/products/0", "/products/1", OVERFLOW_ENDPOINT_TAG]
        assert endpoints["/products/0"]["count"] == 2
        assert endpoints[OVERFLOW_ENDPOINT_TAG]["count"] == 8
        assert snapshot.value("http_reqs", "count") == 11

    def test_error_log_is_bounded(self):
        aggregator = MetricsAggregator(max_errors=3)
        for i in range(5):
            aggregator.record_error(f"error {i}")
        assert aggregator.snapshot().errors == ["error 2", "error 3", "error 4"]

    def test_missing_metric_defaults(self, aggregator):
        snapshot = aggregator.snapshot()
        assert snapshot.get("http_reqs") is None
        assert snapshot.value("http_reqs", "count") == 0.0

    def test_arbitrary_percentile(self, aggregator):
        for i in range(1, 1001):
            aggregator.record_trend("latency", float(i))
        summary = aggregator.snapshot().get("latency")
        assert summary.get("p(97.5)") == pytest.approx(975, rel=0.011)
        with pytest.raises(KeyError):
            summary.get("value")

    def test_snapshot_is_idempotent(self, aggregator):
        for i in range(50):
            aggregator.record_sample(make_sample(duration_ms=i + 1), shard_key=i)
            aggregator.record_check("ok", i % 5 != 0, shard_key=i)
        first = aggregator.snapshot(elapsed_seconds=5)
        second = aggregator.snapshot(elapsed_seconds=5)
        assert first.to_dict() == second.to_dict()

    def test_snapshot_is_detached(self, aggregator):
        aggregator.record_trend("latency", 10.0)
        snapshot = aggregator.snapshot()
        aggregator.record_trend("latency", 1000.0)
        assert snapshot.value("latency", "max") == 10.0
        assert snapshot.value("latency", "p(99)") == pytest.approx(10.0)

    def test_concurrent_threads(self):
        aggregator = MetricsAggregator(shard_count=4)
        per_thread = 500

        def writer(worker: int):
            for i in range(per_thread):
                aggregator.record_sample(make_sample(duration_ms=float(i + 1)))
                aggregator.record_counter("work_items", 1)
                aggregator.record_check("ok", i % 2 == 0)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snapshot = aggregator.snapshot()
        assert snapshot.value("http_reqs", "count") == 8 * per_thread
        assert snapshot.value("work_items", "count") == 8 * per_thread
        assert snapshot.checks["ok"].passes == 4 * per_thread
        assert snapshot.value("checks", "rate") == pytest.approx(0.5)


@pytest.mark.property
class TestAggregatorProperties:
    """
    Property-based tests for aggregation semantics.
    """

    @given(
        durations=st.lists(st.floats(min_value=0.1, max_value=5000), min_size=1, max_size=200),
        seed=st.integers(0, 2**32 - 1),
    )
    @settings(max_examples=50)
    def test_order_and_shard_independent(self, durations, seed):
        """
        Property: Recording the same samples in any order, spread over any
        shards, yields the same snapshot.
        """
        samples = [
            make_sample(tag=f"/e{i % 3}", duration_ms=d, status_code=500 if i % 7 == 0 else 200)
            for i, d in enumerate(durations)
        ]
        shuffled = list(samples)
        rng = random.Random(seed)
        rng.shuffle(shuffled)

        ordered = MetricsAggregator(shard_count=1)
        for sample in samples:
            ordered.record_sample(sample, shard_key=0)

        scattered = MetricsAggregator(shard_count=8)
        for sample in shuffled:
            scattered.record_sample(sample, shard_key=rng.randrange(1000))

        expected = ordered.snapshot(elapsed_seconds=30).to_dict()
        actual = scattered.snapshot(elapsed_seconds=30).to_dict()
        assert actual["checks"] == expected["checks"]
        assert actual["metrics"].keys() == expected["metrics"].keys()
        for name, summary in expected["metrics"].items():
            for aggregation, value in summary["values"].items():
                assert actual["metrics"][name]["values"][aggregation] == pytest.approx(value, abs=1e-3)

    @given(
        passes=st.integers(min_value=0, max_value=200),
        fails=st.integers(min_value=0, max_value=200),
    )
    @settings(max_examples=100)
    def test_rate_is_fraction_of_passes(self, passes, fails):
        """
        Property: A rate metric reports passes / total over everything recorded.
        """
        aggregator = MetricsAggregator()
        for _ in range(passes):
            aggregator.record_rate("ok_rate", True)
        for _ in range(fails):
            aggregator.record_rate("ok_rate", False)
        expected = passes / (passes + fails) if passes + fails else 0.0
        assert aggregator.snapshot().value("ok_rate", "rate") == pytest.approx(expected)
