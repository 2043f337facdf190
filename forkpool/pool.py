"""Process pool: admission control, polling loop and callback dispatch"""
import asyncio
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

from loguru import logger

from .base import BaseProcess
from .callbacks import CallbackRegistry, TaskHandle
from .exceptions import PoolError, PoolStateError
from .process import ParallelProcess, is_supported
from .sync_process import SynchronousProcess
from .task import wrap
from .types import ExecutionMode, PoolConfig, PoolStats, ProcessStatus, TaskInfo

TickCallback = Callable[["Pool"], Any]


class PoolState(Enum):
    """Lifecycle of the polling loop"""

    IDLE = "idle"
    RUNNING = "running"
    DRAINED = "drained"


class Pool:
    """Runs tasks in forked processes, at most `concurrency` at a time.

    Tasks are added up front, each returning a TaskHandle for callbacks, and
    wait() drives a single-threaded polling loop until every task retired:

        pool = Pool.create(concurrency=4, timeout=30)
        for url in urls:
            pool.add(partial(fetch, url)).then(store).catch(report)
        pages = pool.wait()

    When the platform cannot fork, or the pool is configured with
    ExecutionMode.FORCE_SYNC, tasks run inline through SynchronousProcess
    and go through the same loop.
    """

    def __init__(self, config: PoolConfig | None = None):
        self.config = (config or PoolConfig()).model_copy()
        self.asynchronous = self._resolve_mode(self.config.execution_mode)
        self.callbacks = CallbackRegistry()
        self.loop_state = PoolState.IDLE

        # Task management
        self._next_id = 1
        self._queue: deque[BaseProcess] = deque()
        self._in_flight: dict[int, BaseProcess] = {}
        self._finished: list[BaseProcess] = []
        self._failed: list[BaseProcess] = []
        self._timed_out: list[BaseProcess] = []

        self._started_at: float | None = None
        self._drained_at: float | None = None

    @classmethod
    def create(cls, config: PoolConfig | None = None, **overrides) -> "Pool":
        """Create a pool from a config, keyword overrides, or both"""
        if config is None:
            config = PoolConfig(**overrides)
        elif overrides:
            config = PoolConfig(**{**config.model_dump(), **overrides})
        return cls(config)

    @staticmethod
    def is_supported() -> bool:
        """Whether tasks can run in forked processes on this platform"""
        return is_supported()

    @staticmethod
    def _resolve_mode(mode: ExecutionMode) -> bool:
        supported = is_supported()
        if mode is ExecutionMode.FORCE_SYNC:
            return False
        if mode is ExecutionMode.FORCE_ASYNC:
            if not supported:
                raise PoolError("Process forking is not supported on this platform")
            return True
        return supported

    # Configuration

    def concurrency(self, limit: int | None) -> "Pool":
        """Cap the number of running processes. None or a value <= 0 removes the cap."""
        self._ensure_configurable()
        self.config.concurrency = limit
        return self

    def timeout(self, seconds: float | None) -> "Pool":
        """Default timeout for tasks without their own"""
        self._ensure_configurable()
        self.config.timeout = seconds
        return self

    def sleep_time(self, seconds: float) -> "Pool":
        """Pause between polling ticks"""
        self._ensure_configurable()
        self.config.sleep_time = seconds
        return self

    def add(self, target: Any, timeout: float | None = None) -> TaskHandle:
        """Queue a task.

        Args:
            target: A zero-argument callable, a Task instance, or a process
                built ahead of time, which is renumbered into this pool
            timeout: Optional timeout override for this task

        Returns:
            Handle for attaching then/catch/timeout callbacks

        Raises:
            InvalidTaskError: If the target cannot be invoked without arguments
            PoolStateError: If a process was already started or queued
        """
        self._ensure_configurable()
        if isinstance(target, BaseProcess):
            process = self._adopt(target, timeout)
        else:
            process = self._make_process(wrap(target, self._next_id, timeout=timeout))
        self._next_id += 1

        self._queue.append(process)
        logger.debug(f"Queued task {process.id} ({process.task.name}) in pool '{self.config.name}'")
        return TaskHandle(self, process)

    def _adopt(self, process: BaseProcess, timeout: float | None) -> BaseProcess:
        if process.status is not ProcessStatus.PENDING:
            raise PoolStateError(f"Cannot add task {process.id}, it is already {process.status.value}")
        if any(queued is process for queued in self._queue):
            raise PoolStateError(f"Task {process.id} is already queued in pool '{self.config.name}'")
        if process.asynchronous and not is_supported():
            raise PoolError("Process forking is not supported on this platform")
        if timeout is not None:
            if timeout <= 0:
                raise ValueError(f"Task timeout must be positive, got {timeout}")
            process.task.timeout = timeout
            process.timeout = timeout

        process.task.id = self._next_id
        return process

    def _make_process(self, task: TaskInfo) -> BaseProcess:
        if self.asynchronous:
            return ParallelProcess(task, capture_output=self.config.capture_output, kill_grace_period=self.config.kill_grace_period)
        return SynchronousProcess(task, capture_output=self.config.capture_output)

    def _ensure_configurable(self) -> None:
        if self.loop_state is not PoolState.IDLE:
            raise PoolStateError(f"Pool '{self.config.name}' cannot be changed once wait() has started")

    # Polling loop

    def wait(self, on_tick: TickCallback | None = None) -> list[Any]:
        """Run every queued task and block until all of them retired.

        Args:
            on_tick: Called with the pool once per polling tick. Returning a
                truthy value stops the pool early.

        Returns:
            Results of the successful tasks, in the order they were added.
            A second call on a drained pool returns the same list again.
        """
        if self.loop_state is PoolState.DRAINED:
            return self.results()

        self._begin()
        try:
            while self._has_work():
                if self._tick(on_tick):
                    break
                if self._has_work():
                    time.sleep(self.config.sleep_time)
        except BaseException:
            self.stop()
            raise

        return self._drain()

    async def wait_async(self, on_tick: TickCallback | None = None) -> list[Any]:
        """Same as wait(), yielding to the event loop between ticks"""
        if self.loop_state is PoolState.DRAINED:
            return self.results()

        self._begin()
        try:
            while self._has_work():
                if self._tick(on_tick):
                    break
                if self._has_work():
                    await asyncio.sleep(self.config.sleep_time)
        except BaseException:
            self.stop()
            raise

        return self._drain()

    def _begin(self) -> None:
        self.loop_state = PoolState.RUNNING
        self._started_at = time.monotonic()
        mode = "parallel" if self.asynchronous else "synchronous"
        logger.debug(f"Pool '{self.config.name}' running {len(self._queue)} tasks ({mode}, concurrency={self.config.concurrency})")

    def _drain(self) -> list[Any]:
        if self._in_flight:
            self.stop()
        self.loop_state = PoolState.DRAINED
        self._drained_at = time.monotonic()
        logger.info(
            f"Pool '{self.config.name}' drained in {self.elapsed:.2f}s: "
            f"{len(self._finished)} successful, {len(self._failed)} failed, {len(self._timed_out)} timed out"
        )
        return self.results()

    def _has_work(self) -> bool:
        return bool(self._queue or self._in_flight)

    def _has_free_slot(self) -> bool:
        limit = self.config.concurrency
        return limit is None or len(self._in_flight) < limit

    def _tick(self, on_tick: TickCallback | None) -> bool:
        self._admit()

        now = time.monotonic()
        for process in list(self._in_flight.values()):
            if not process.poll():
                process.enforce_timeout(now)

        for process in [p for p in self._in_flight.values() if p.is_finished]:
            self._retire(process)

        if on_tick is not None:
            return bool(on_tick(self))
        return False

    def _admit(self) -> None:
        while self._queue and self._has_free_slot():
            process = self._queue.popleft()
            if process.timeout is None:
                process.timeout = self.config.timeout

            self._in_flight[process.id] = process
            try:
                process.start()
            except BaseException:
                if process.status is ProcessStatus.PENDING:
                    del self._in_flight[process.id]
                    self._queue.appendleft(process)
                raise

            # An inline task has already run. It retires, firing its callbacks,
            # before the next queued task starts.
            if not process.asynchronous:
                break

    def _retire(self, process: BaseProcess) -> None:
        del self._in_flight[process.id]
        self._record(process)
        logger.debug(f"Task {process.id} {process.status.value} after {process.elapsed:.3f}s")
        self.callbacks.dispatch(process)

    def _record(self, process: BaseProcess) -> None:
        if process.status is ProcessStatus.SUCCESSFUL:
            self._finished.append(process)
        elif process.status is ProcessStatus.FAILED:
            self._failed.append(process)
        elif process.status is ProcessStatus.TIMED_OUT:
            self._timed_out.append(process)

    def stop(self) -> None:
        """Kill every in-flight process and end the pool.

        Killed processes are recorded as failed without invoking callbacks.
        Tasks still queued stay pending.
        """
        if self._in_flight:
            logger.warning(f"Stopping pool '{self.config.name}' with {len(self._in_flight)} processes in flight")

        for process in list(self._in_flight.values()):
            process.terminate()
            del self._in_flight[process.id]
            self._record(process)
            self.callbacks.discard(process.id)

        if self.loop_state is not PoolState.DRAINED:
            self.loop_state = PoolState.DRAINED
            self._drained_at = time.monotonic()

    def __enter__(self) -> "Pool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # Inspection

    def results(self) -> list[Any]:
        """Results of the successful tasks in the order they were added"""
        return [process.result for process in sorted(self._finished, key=lambda p: p.id)]

    def get_queue(self) -> list[BaseProcess]:
        return list(self._queue)

    def get_in_progress(self) -> list[BaseProcess]:
        return list(self._in_flight.values())

    def get_finished(self) -> list[BaseProcess]:
        return list(self._finished)

    def get_failed(self) -> list[BaseProcess]:
        return list(self._failed)

    def get_timed_out(self) -> list[BaseProcess]:
        return list(self._timed_out)

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._drained_at if self._drained_at is not None else time.monotonic()
        return end - self._started_at

    def get_stats(self) -> PoolStats:
        """Get current pool counters"""
        return PoolStats(
            name=self.config.name,
            asynchronous=self.asynchronous,
            state=self.loop_state.value,
            pending=len(self._queue),
            running=len(self._in_flight),
            successful=len(self._finished),
            failed=len(self._failed),
            timed_out=len(self._timed_out),
            concurrency=self.config.concurrency,
            timeout=self.config.timeout,
            elapsed_seconds=self.elapsed,
        )

    def state(self) -> str:
        """Human-readable dump of the pool and every task in it"""
        stats = self.get_stats()
        mode = "parallel" if stats.asynchronous else "synchronous"
        lines = [
            f"Pool '{stats.name}' ({mode}, {stats.state}): "
            f"{stats.pending} pending, {stats.running} running, {stats.successful} successful, "
            f"{stats.failed} failed, {stats.timed_out} timed out",
            f"  concurrency={stats.concurrency} timeout={stats.timeout} elapsed={stats.elapsed_seconds:.2f}s",
        ]
        for group in (self._queue, self._in_flight.values(), self._finished, self._failed, self._timed_out):
            lines.extend(f"  {process.describe()}" for process in group)
        return "\n".join(lines)

    status = state

    def __str__(self) -> str:
        return self.state()

    def __repr__(self) -> str:
        return f"<Pool '{self.config.name}' {self.loop_state.value}>"
