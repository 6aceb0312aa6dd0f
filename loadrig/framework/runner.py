"""
Run orchestration for loadrig.

LoadTestRunner drives a run from configuration to verdict: it resolves
workloads, ticks every scenario's schedule, keeps the virtual user pools at
their target concurrency, evaluates abort-enabled thresholds on interim
snapshots and renders the final threshold verdict.

Run states:
    configuring -> ramping <-> steady -> draining -> completed
    configuring -> aborted (configuration or workload errors)
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from .config import ConfigValidationError, RunConfig
from .executor import HttpExecutor
from .metrics import MetricsAggregator, MetricsSnapshot
from .models import RunState
from .pool import VirtualUserPool
from .scheduler import RampingSchedule
from .thresholds import ThresholdEvaluator, ThresholdOutcome, all_passed
from .workload import Workload, WorkloadResolutionError, resolve_workload

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.CONFIGURING: {RunState.RAMPING, RunState.STEADY, RunState.DRAINING, RunState.ABORTED},
    RunState.RAMPING: {RunState.STEADY, RunState.DRAINING, RunState.ABORTED},
    RunState.STEADY: {RunState.RAMPING, RunState.DRAINING, RunState.ABORTED},
    RunState.DRAINING: {RunState.COMPLETED, RunState.ABORTED},
    RunState.COMPLETED: set(),
    RunState.ABORTED: set(),
}


@dataclass
class StateTransition:
    """A state the run entered, and when."""

    state: RunState
    at: datetime
    elapsed_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "at": self.at.isoformat(),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass
class RunResult:
    """
    Outcome of a completed run.

    Attributes:
        name: Run name
        passed: True when every threshold passed and no threshold aborted
            the run
        thresholds: Final threshold outcomes keyed by metric
        snapshot: Final metrics snapshot
        state_history: Every state the run went through
        started_at: Wall-clock start
        finished_at: Wall-clock end
        aborted_by: Threshold that stopped the run early, if any
    """

    name: str
    passed: bool
    thresholds: dict[str, ThresholdOutcome]
    snapshot: MetricsSnapshot
    state_history: list[StateTransition] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    aborted_by: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def final_state(self) -> Optional[RunState]:
        return self.state_history[-1].state if self.state_history else None

    def failed_thresholds(self) -> list[str]:
        """Descriptions of every failed threshold expression."""
        failures = []
        for metric, outcome in self.thresholds.items():
            for result in outcome.results:
                if not result.passed:
                    failures.append(f"{metric}: {result.expression} ({result.reason})")
        return failures

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "passed": self.passed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "aborted_by": self.aborted_by,
            "state_history": [transition.to_dict() for transition in self.state_history],
            "thresholds": {metric: outcome.to_dict() for metric, outcome in self.thresholds.items()},
            "metrics": self.snapshot.to_dict(),
        }


class LoadTestRunner:
    """
    Runs a load test described by a RunConfig.

    Example usage:
        config = load_config("run.yaml")
        result = await LoadTestRunner(config).run()
        print(result.passed)
    """

    def __init__(
        self,
        config: RunConfig,
        workloads: Optional[dict[str, Workload]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        aggregator: Optional[MetricsAggregator] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the runner.

        Args:
            config: Run configuration
            workloads: Pre-resolved workloads keyed by scenario name; any
                scenario missing here is resolved from its reference
            transport: Optional HTTP transport override (e.g. for tests)
            aggregator: Optional aggregator to record into
            clock: Monotonic clock in seconds
        """
        self.config = config
        self.aggregator = aggregator or MetricsAggregator()
        self.evaluator = ThresholdEvaluator(config.thresholds)
        self._workloads = dict(workloads or {})
        self._transport = transport
        self._clock = clock
        self._state: Optional[RunState] = None
        self._history: list[StateTransition] = []
        self._start: Optional[float] = None
        self._vus_max = 0

    @property
    def state(self) -> Optional[RunState]:
        return self._state

    @property
    def state_history(self) -> list[StateTransition]:
        return list(self._history)

    def _elapsed(self) -> float:
        if self._start is None:
            return 0.0
        return self._clock() - self._start

    def _transition(self, state: RunState) -> None:
        if state == self._state:
            return
        if self._state is not None and state not in _ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid run state transition: {self._state.value} -> {state.value}")

        previous = self._state
        self._state = state
        self._history.append(
            StateTransition(state=state, at=datetime.now(timezone.utc), elapsed_seconds=self._elapsed())
        )
        if previous is None:
            logger.debug(f"Run '{self.config.name}' is {state.value}")
        else:
            logger.info(f"Run '{self.config.name}': {previous.value} -> {state.value}")

    def _prepare(self) -> tuple[dict[str, Workload], dict[str, RampingSchedule]]:
        if not self.config.scenarios:
            raise ConfigValidationError("Run configuration defines no scenarios")

        workloads: dict[str, Workload] = {}
        schedules: dict[str, RampingSchedule] = {}
        errors = []
        for name, scenario in self.config.scenarios.items():
            try:
                schedules[name] = scenario.schedule()
            except ValueError as e:
                errors.append(f"scenarios.{name}: {e}")
            workload = self._workloads.get(name)
            if workload is None:
                workload = resolve_workload(scenario.workload, self.config.source_dir)
            workloads[name] = workload

        if errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(errors)} error(s)", errors=errors
            )
        return workloads, schedules

    async def run(self) -> RunResult:
        """Execute the run.

        Returns:
            RunResult with the final snapshot and threshold verdict

        Raises:
            ConfigValidationError: If the configuration cannot be run
            WorkloadResolutionError: If a workload cannot be imported
        """
        self._transition(RunState.CONFIGURING)
        try:
            workloads, schedules = self._prepare()
        except (ConfigValidationError, WorkloadResolutionError) as e:
            logger.error(f"Run '{self.config.name}' aborted: {e}")
            self._transition(RunState.ABORTED)
            raise

        started_at = datetime.now(timezone.utc)
        aborted_by: Optional[str] = None

        logger.info(
            f"Starting run '{self.config.name}' against {self.config.base_url} "
            f"({len(schedules)} scenario(s), {self.config.total_duration:.1f}s)"
        )

        async with HttpExecutor(
            base_url=self.config.base_url,
            headers=self.config.headers,
            timeout=self.config.http.timeout,
            max_connections=self.config.http.max_connections,
            transport=self._transport,
        ) as executor:
            ids = itertools.count(1)
            pools = {
                name: VirtualUserPool(
                    scenario=name,
                    workload=workloads[name],
                    executor=executor,
                    aggregator=self.aggregator,
                    think_time=scenario.think_time,
                    graceful_ramp_down=scenario.graceful_ramp_down,
                    max_iterations=scenario.max_iterations,
                    tags=scenario.tags,
                    id_source=ids,
                )
                for name, scenario in self.config.scenarios.items()
            }

            self._start = self._clock()
            try:
                aborted_by = await self._drive(pools, schedules)
                await self._drain(pools)
            finally:
                for pool in pools.values():
                    await pool.cancel_all()

        elapsed = self._elapsed()
        snapshot = self.aggregator.snapshot(elapsed_seconds=elapsed)
        outcomes = self.evaluator.evaluate(snapshot)
        passed = all_passed(outcomes) and aborted_by is None
        self._transition(RunState.COMPLETED)

        result = RunResult(
            name=self.config.name,
            passed=passed,
            thresholds=outcomes,
            snapshot=snapshot,
            state_history=self.state_history,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            aborted_by=aborted_by,
        )
        logger.info(
            f"Run '{self.config.name}' finished in {elapsed:.1f}s: "
            f"{'PASSED' if passed else 'FAILED'}"
        )
        return result

    async def _drive(
        self,
        pools: dict[str, VirtualUserPool],
        schedules: dict[str, RampingSchedule],
    ) -> Optional[str]:
        """Tick the schedules until the last stage ends or a threshold aborts.

        Returns:
            Description of the threshold that aborted the run, or None
        """
        options = self.config.options
        total_duration = self.config.total_duration
        next_evaluation = options.evaluation_interval
        finished: set[str] = set()

        while True:
            elapsed = self._elapsed()
            if elapsed >= total_duration:
                return None

            ramping = False
            for name, pool in pools.items():
                scenario = self.config.scenarios[name]
                schedule = schedules[name]
                local = elapsed - scenario.start_time
                if local < 0 or name in finished:
                    continue
                if schedule.is_finished(local):
                    logger.debug(f"Scenario '{name}' finished its stages")
                    pool.stop_all()
                    finished.add(name)
                    continue
                pool.reconcile(schedule.concurrency_at(local))
                ramping = ramping or schedule.is_ramping(local)

            for name in finished:
                pools[name].enforce_ramp_down()
                pools[name].reap()

            self._transition(RunState.RAMPING if ramping else RunState.STEADY)
            self._record_vus(pools)

            if self.evaluator.has_abort_thresholds and elapsed >= next_evaluation:
                next_evaluation += options.evaluation_interval
                snapshot = self.aggregator.snapshot(elapsed_seconds=elapsed)
                breached = self.evaluator.breached_abort_thresholds(snapshot, elapsed)
                if breached:
                    spec = breached[0]
                    logger.warning(
                        f"Threshold '{spec.metric}: {spec.expression}' failed at "
                        f"{elapsed:.1f}s, aborting run"
                    )
                    return f"{spec.metric}: {spec.expression}"

            await asyncio.sleep(options.tick_interval)

    async def _drain(self, pools: dict[str, VirtualUserPool]) -> None:
        """Give users graceful_stop seconds to finish, then hard stop."""
        self._transition(RunState.DRAINING)
        for pool in pools.values():
            pool.stop_all()

        graceful_stop = self.config.options.graceful_stop
        results = await asyncio.gather(
            *(pool.wait(timeout=graceful_stop) for pool in pools.values())
        )
        if not all(results):
            logger.info(f"Graceful stop of {graceful_stop:.1f}s exceeded, cancelling VUs")
        for pool in pools.values():
            await pool.cancel_all()
        self._record_vus(pools)

    def _record_vus(self, pools: dict[str, VirtualUserPool]) -> None:
        live = sum(pool.live_count for pool in pools.values())
        self._vus_max = max(self._vus_max, live)
        self.aggregator.set_gauge("vus", live)
        self.aggregator.set_gauge("vus_max", self._vus_max)


def run_load_test_sync(config: RunConfig, **kwargs: Any) -> RunResult:
    """Synchronous wrapper for LoadTestRunner.run.

    Args:
        config: Run configuration
        **kwargs: Passed to LoadTestRunner

    Returns:
        RunResult of the run
    """
    return asyncio.run(LoadTestRunner(config, **kwargs).run())
