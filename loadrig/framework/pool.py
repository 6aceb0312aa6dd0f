"""
Virtual user pool for loadrig.

Each virtual user is an asyncio task that loops a workload until it is
asked to stop. The pool grows and shrinks to match the scheduler's target
concurrency; users asked to stop finish their current iteration first and
are cancelled only when they exceed the graceful ramp-down window.
"""

import asyncio
import itertools
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from .executor import HttpExecutor
from .metrics import MetricsAggregator
from .models import VUState
from .workload import VUContext, Workload

logger = logging.getLogger(__name__)

DEFAULT_GRACEFUL_RAMP_DOWN = 30.0

# Check recorded when a workload iteration raises
ITERATION_CHECK = "iteration completed without error"

ThinkTime = Union[float, tuple[float, float]]


def normalize_think_time(think_time: Optional[ThinkTime]) -> tuple[float, float]:
    """Convert a fixed or ranged think time to a (min, max) pair.

    Raises:
        ValueError: If a bound is negative or the range is inverted
    """
    if think_time is None:
        return 0.0, 0.0
    if isinstance(think_time, (int, float)):
        low = high = float(think_time)
    else:
        low, high = (float(bound) for bound in think_time)
    if low < 0 or high < 0:
        raise ValueError(f"think_time must be non-negative, got {think_time!r}")
    if low > high:
        raise ValueError(f"think_time range is inverted: {think_time!r}")
    return low, high


@dataclass
class VirtualUser:
    """
    A single simulated client.

    Attributes:
        id: Run-wide unique id
        scenario: Name of the owning scenario
        state: Lifecycle state
        iterations: Number of iterations started so far
        stop_requested_at: Monotonic time the user was asked to stop
    """

    id: int
    scenario: str
    state: VUState = VUState.IDLE
    iterations: int = 0
    stop_requested_at: Optional[float] = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        """Whether the user counts towards the pool's running concurrency."""
        return self.state in (VUState.IDLE, VUState.RUNNING)

    @property
    def is_live(self) -> bool:
        """Whether the user's task is still alive."""
        return self.state != VUState.STOPPED

    def request_stop(self) -> None:
        """Ask the user to stop after its current iteration."""
        if self.state == VUState.STOPPED or self.stop_event.is_set():
            return
        self.state = VUState.STOPPING
        self.stop_requested_at = time.monotonic()
        self.stop_event.set()


class VirtualUserPool:
    """
    Owns the virtual users of one scenario.

    Example usage:
        pool = VirtualUserPool("browse", workload, executor, aggregator)
        pool.reconcile(10)     # spawn 10 users
        pool.reconcile(4)      # ask the 6 newest to stop
        pool.stop_all()
        await pool.wait(timeout=30)
        await pool.cancel_all()
    """

    def __init__(
        self,
        scenario: str,
        workload: Workload,
        executor: HttpExecutor,
        aggregator: MetricsAggregator,
        think_time: Optional[ThinkTime] = None,
        graceful_ramp_down: float = DEFAULT_GRACEFUL_RAMP_DOWN,
        max_iterations: Optional[int] = None,
        tags: Optional[dict[str, str]] = None,
        id_source: Optional[Iterator[int]] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the pool.

        Args:
            scenario: Scenario name
            workload: Coroutine function run once per iteration
            executor: Shared HTTP executor
            aggregator: Shared metrics aggregator
            think_time: Pause between iterations, fixed or (min, max)
            graceful_ramp_down: Seconds a stopping user may take to finish
            max_iterations: Iterations after which a user retires itself
            tags: Scenario tags exposed to workloads
            id_source: Iterator of user ids shared across pools
            rng: Random source for ranged think times
        """
        self.scenario = scenario
        self.workload = workload
        self.executor = executor
        self.aggregator = aggregator
        self.think_time = normalize_think_time(think_time)
        self.graceful_ramp_down = graceful_ramp_down
        self.max_iterations = max_iterations
        self.tags = dict(tags or {})
        self._ids = id_source if id_source is not None else itertools.count(1)
        self._rng = rng or random.Random()
        self._users: list[VirtualUser] = []
        self.total_spawned = 0
        self.retired_count = 0

    @property
    def users(self) -> list[VirtualUser]:
        return list(self._users)

    @property
    def active_count(self) -> int:
        """Users running or about to run."""
        return sum(1 for user in self._users if user.is_active)

    @property
    def live_count(self) -> int:
        """Users whose task has not finished, including stopping ones."""
        return sum(1 for user in self._users if user.is_live)

    def reconcile(self, desired: int) -> None:
        """Grow or shrink the pool towards the desired concurrency.

        New users are spawned immediately. Excess users are asked to stop,
        most recently started first. Must be called from a running event
        loop.
        """
        if desired < 0:
            raise ValueError(f"desired concurrency must be non-negative, got {desired}")

        active = [user for user in self._users if user.is_active]
        shortfall = desired - len(active) - self.retired_count
        if shortfall > 0:
            for _ in range(shortfall):
                self._spawn()
        elif len(active) > desired:
            for user in reversed(active[desired:]):
                user.request_stop()
            logger.debug(f"[{self.scenario}] Stopping {len(active) - desired} VUs")

        self.enforce_ramp_down()
        self.reap()

    def _spawn(self) -> VirtualUser:
        user = VirtualUser(id=next(self._ids), scenario=self.scenario)
        user.task = asyncio.create_task(
            self._run_user(user), name=f"vu-{self.scenario}-{user.id}"
        )
        user.task.add_done_callback(self._on_task_done)
        self._users.append(user)
        self.total_spawned += 1
        return user

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[{self.scenario}] VU task {task.get_name()} crashed: {error}")

    def enforce_ramp_down(self) -> None:
        """Cancel stopping users that outlived the graceful ramp-down window."""
        now = time.monotonic()
        for user in self._users:
            if (
                user.state == VUState.STOPPING
                and user.stop_requested_at is not None
                and now - user.stop_requested_at > self.graceful_ramp_down
                and user.task is not None
                and not user.task.done()
            ):
                logger.debug(f"[{self.scenario}] VU {user.id} exceeded graceful ramp-down")
                user.task.cancel()

    def reap(self) -> None:
        """Forget users that have stopped."""
        self._users = [user for user in self._users if user.is_live]

    def stop_all(self) -> None:
        """Ask every user to stop after its current iteration."""
        for user in self._users:
            user.request_stop()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for every user task to finish.

        Returns:
            True if all users stopped within the timeout
        """
        tasks = [user.task for user in self._users if user.task and not user.task.done()]
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    async def cancel_all(self) -> int:
        """Hard stop: cancel every user that is still running.

        Returns:
            Number of users that had to be cancelled
        """
        tasks = [user.task for user in self._users if user.task and not user.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"[{self.scenario}] Cancelled {len(tasks)} VUs at hard stop")
        self.reap()
        return len(tasks)

    def _next_think_time(self) -> float:
        low, high = self.think_time
        if low == high:
            return low
        return self._rng.uniform(low, high)

    async def _run_user(self, user: VirtualUser) -> None:
        context = VUContext(
            vu_id=user.id,
            scenario=self.scenario,
            executor=self.executor,
            aggregator=self.aggregator,
            tags=self.tags,
        )
        if user.state == VUState.IDLE:
            user.state = VUState.RUNNING
        try:
            while not user.stop_event.is_set():
                if self.max_iterations is not None and user.iterations >= self.max_iterations:
                    logger.debug(f"[{self.scenario}] VU {user.id} reached max_iterations")
                    self.retired_count += 1
                    break

                context.iteration = user.iterations
                user.iterations += 1
                await self._run_iteration(user, context)

                delay = self._next_think_time()
                if delay > 0 and not user.stop_event.is_set():
                    try:
                        await asyncio.wait_for(user.stop_event.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
                else:
                    # Yield so the scheduler keeps ticking
                    await asyncio.sleep(0)
        finally:
            user.state = VUState.STOPPED

    async def _run_iteration(self, user: VirtualUser, context: VUContext) -> None:
        start_time = time.perf_counter()
        error = None
        try:
            await self.workload(context)
        except Exception as e:
            error = f"[{self.scenario}] VU {user.id} iteration {context.iteration}: {type(e).__name__}: {e}"
            logger.warning(f"Workload error in {error}")
        duration_ms = (time.perf_counter() - start_time) * 1000

        self.aggregator.record_iteration(duration_ms, error, shard_key=user.id)
        if error is not None:
            self.aggregator.record_check(ITERATION_CHECK, False, shard_key=user.id)
