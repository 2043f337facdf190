"""Integration tests for the forking process pool."""

import asyncio
import os
import signal
import sys
import time

import pytest
from loguru import logger

from forkpool import (
    AbnormalExitError,
    ExecutionError,
    ExecutionMode,
    InvalidTaskError,
    ParallelProcess,
    Pool,
    PoolState,
    PoolStateError,
    ProcessStatus,
    ProcessTimeoutError,
    SynchronousProcess,
    Task,
    wrap,
)

pytestmark = [
    pytest.mark.integration,
    pytest.mark.process_pool,
    pytest.mark.skipif(not Pool.is_supported(), reason="os.fork and process signals are not available"),
]

# Module-level state for process isolation testing
test_value = 0


def modify_global():
    """Modify global state - for process isolation testing."""
    global test_value  # noqa: PLW0603 - needed for process isolation test
    test_value += 1
    return test_value


class Payload:
    """Class known to both parent and child."""

    def __init__(self):
        self.property = False


class ReturnsTwo(Task):
    def run(self):
        return 2


class Configured(Task):
    def configure(self):
        self.base = 40

    def run(self):
        return self.base + 2


class Invokable:
    def __call__(self):
        return 2


class NonInvokable:
    pass


class TestPoolBasics:
    """Test basic pool functionality."""

    def test_is_supported(self):
        """Test the capability probe on a forking platform."""
        assert Pool.is_supported() is True
        assert Pool.create().asynchronous is True

    def test_adds_prebuilt_processes(self, pool):
        """Test queueing process objects built outside the pool."""
        pool.add(lambda: 1)
        forked = pool.add(ParallelProcess(wrap(lambda: 2, task_id=50)))
        inline = pool.add(SynchronousProcess(wrap(lambda: 3, task_id=51)))

        assert (forked.id, inline.id) == (2, 3)
        assert pool.wait() == [1, 2, 3]
        assert forked.process.pid is not None
        assert inline.process.pid is None

    def test_runs_processes_in_parallel(self, pool):
        """Test that short tasks overlap instead of running back to back."""
        for _ in range(5):
            pool.add(lambda: time.sleep(0.001))

        start_time = time.monotonic()
        pool.wait()
        elapsed = time.monotonic() - start_time

        assert elapsed < 0.9, f"Execution time was {elapsed:.3f}s\n{pool.state()}"
        assert len(pool.get_finished()) == 5, pool.state()
        logger.info(f"Ran 5 tasks in {elapsed:.3f}s")

    def test_sleeping_tasks_overlap(self, pool):
        """Test that wall time is close to one task, not the serial sum."""
        for _ in range(5):
            pool.add(lambda: time.sleep(0.3))

        start_time = time.monotonic()
        pool.wait()
        elapsed = time.monotonic() - start_time

        assert elapsed < 5 * 0.3, f"Execution time was {elapsed:.3f}s\n{pool.state()}"

    def test_handles_success(self, pool):
        """Test then callbacks and the aggregate result list."""
        counter = 0

        def add_output(output):
            nonlocal counter
            counter += output

        for _ in range(5):
            pool.add(lambda: 2).then(add_output)

        results = pool.wait()

        assert counter == 10, pool.state()
        assert len(results) == 5
        assert sum(results) == 10

    def test_preserves_admission_order(self, pool):
        """Test that results follow insertion order, not finish order."""
        for i in range(1, 6):
            pool.add(lambda i=i: time.sleep((6 - i) * 0.05) or i)

        assert pool.wait() == [1, 2, 3, 4, 5], pool.state()

    @pytest.mark.parametrize("concurrency", [1, 2, 3, None])
    def test_preserves_order_under_any_concurrency(self, pool, concurrency):
        """Test order preservation with a concurrency ceiling."""
        pool.concurrency(concurrency)
        for i in range(1, 6):
            pool.add(lambda i=i: time.sleep(0.01 * (i % 2)) or i)

        assert pool.wait() == [1, 2, 3, 4, 5], pool.state()

    def test_returns_objects_of_parent_classes(self, pool):
        """Test that a result of a class known to both sides comes back intact."""
        received = []

        def build():
            payload = Payload()
            payload.property = True
            return payload

        pool.add(build).then(received.append)
        pool.wait()

        assert len(received) == 1
        assert isinstance(received[0], Payload)
        assert received[0].property is True

    def test_runs_task_objects(self, pool):
        """Test Task subclasses added directly to the pool."""
        pool.add(ReturnsTwo())

        assert pool.wait() == [2]

    def test_configure_runs_in_the_child(self, pool):
        """Test that configure() runs inside the worker, not in the parent."""
        task = Configured()
        pool.add(task)

        assert pool.wait() == [42]
        assert not hasattr(task, "base")

    def test_runs_invokable_objects(self, pool):
        """Test objects defining __call__."""
        pool.add(Invokable())

        assert pool.wait() == [2]

    def test_rejects_non_invokable_objects(self, pool):
        """Test that a non-invokable target fails at add time without touching the queue."""
        pool.add(lambda: 1)

        with pytest.raises(InvalidTaskError):
            pool.add(NonInvokable())

        assert len(pool.get_queue()) == 1
        assert pool.wait() == [1]

    def test_captures_task_output(self, pool):
        """Test that a task's stdout ends up in its process output buffer."""
        handle = pool.add(lambda: print("hello from the child") or 1)
        pool.wait()

        assert handle.process.output == "hello from the child\n"


class TestConcurrency:
    """Test the concurrency ceiling."""

    @pytest.mark.slow
    def test_maximum_of_concurrent_processes(self):
        """Test that three 1s tasks with concurrency 2 take at least 2s."""
        pool = Pool.create().concurrency(2)
        for _ in range(3):
            pool.add(lambda: time.sleep(1))

        start_time = time.monotonic()
        pool.wait()
        elapsed = time.monotonic() - start_time

        assert elapsed >= 2, f"Execution time was {elapsed:.3f}s, expected more than 2.\n{pool.state()}"
        assert len(pool.get_finished()) == 3, pool.state()

    def test_in_flight_never_exceeds_ceiling(self, pool):
        """Test the ceiling on every tick."""
        observed = []
        pool.concurrency(2)
        for _ in range(6):
            pool.add(lambda: time.sleep(0.05))

        pool.wait(lambda p: observed.append(len(p.get_in_progress())))

        assert observed
        assert max(observed) <= 2
        assert len(pool.get_finished()) == 6

    def test_process_isolation(self, pool):
        """Test that children cannot change parent memory."""
        for _ in range(5):
            pool.add(modify_global)

        results = pool.wait()

        # Each child starts from the parent's snapshot
        assert results == [1, 1, 1, 1, 1]
        assert test_value == 0

    def test_cpu_intensive(self, pool, sample_tasks):
        """Test CPU-bound tasks."""
        for _ in range(3):
            pool.add(sample_tasks["cpu_intensive"])

        assert pool.wait() == [6765, 6765, 6765]


class TestFailures:
    """Test failure, abnormal exit and timeout delivery."""

    def test_execution_error_goes_to_catch(self, pool):
        """Test that an exception inside the task reaches catch, never wait()."""
        errors = []
        successes = []

        def fail():
            raise ValueError("boom")

        pool.add(fail).then(successes.append).catch(errors.append)
        pool.add(lambda: 3)

        assert pool.wait() == [3]
        assert successes == []
        assert len(errors) == 1

        error = errors[0]
        assert isinstance(error, ExecutionError)
        assert error.error_type == "ValueError"
        assert error.message == "boom"
        assert isinstance(error.exception, ValueError)
        assert "raise ValueError" in error.remote_traceback
        assert len(pool.get_failed()) == 1

    def test_zero_division_is_classified(self, pool, sample_tasks):
        """Test a builtin exception type."""
        errors = []
        pool.add(sample_tasks["error"]).catch(errors.append)
        pool.wait()

        assert errors[0].error_type == "ZeroDivisionError"

    def test_abnormal_exit_goes_to_catch(self, pool):
        """Test a child that exits without writing a result."""
        errors = []
        pool.add(lambda: os._exit(5)).catch(errors.append)
        pool.wait()

        assert len(errors) == 1
        assert isinstance(errors[0], AbnormalExitError)
        assert errors[0].exit_code == 5
        assert "exit code 5" in str(errors[0])

    def test_killed_child_goes_to_catch(self, pool):
        """Test a child killed by a signal."""
        errors = []
        pool.add(lambda: os.kill(os.getpid(), signal.SIGKILL)).catch(errors.append)
        pool.wait()

        assert isinstance(errors[0], AbnormalExitError)
        assert errors[0].exit_code == -signal.SIGKILL
        assert "SIGKILL" in str(errors[0])

    def test_unserializable_result_is_abnormal_exit(self, pool):
        """Test a return value that cannot be pickled."""
        errors = []
        pool.add(lambda: (lambda: None)).catch(errors.append)
        pool.wait()

        assert isinstance(errors[0], AbnormalExitError)
        assert "could not be serialized" in str(errors[0])

    def test_system_exit_goes_to_catch(self, pool):
        """Test a task that calls sys.exit() in the child."""
        errors = []
        pool.add(lambda: sys.exit(4)).catch(errors.append)
        pool.add(lambda: 1)

        assert pool.wait() == [1]
        assert isinstance(errors[0], AbnormalExitError)
        assert errors[0].exit_code == 4

    @pytest.mark.slow
    def test_handles_timeout(self):
        """Test that every timed out task fires its timeout callback exactly once."""
        pool = Pool.create().timeout(1)
        timeouts = []
        others = []

        for i in range(5):
            pool.add(lambda: time.sleep(2)).timeout(lambda i=i: timeouts.append(i)).then(others.append).catch(others.append)

        pool.wait()

        assert sorted(timeouts) == [0, 1, 2, 3, 4], pool.state()
        assert others == []
        assert len(pool.get_timed_out()) == 5
        for process in pool.get_timed_out():
            assert process.status is ProcessStatus.TIMED_OUT
            assert isinstance(process.error, ProcessTimeoutError)

    def test_per_task_timeout_override(self, pool):
        """Test that a task timeout overrides the pool default."""
        timed_out = []
        pool.add(lambda: time.sleep(5)).set_timeout(0.2).timeout(lambda: timed_out.append("slow"))
        pool.add(lambda: "quick", timeout=2)

        start_time = time.monotonic()
        results = pool.wait()

        assert results == ["quick"]
        assert timed_out == ["slow"]
        assert time.monotonic() - start_time < 4


class TestWaitLoop:
    """Test the polling loop surface."""

    def test_takes_an_intermediate_callback(self, pool):
        """Test that the tick callback runs and receives the pool."""
        seen = []
        pool.add(lambda: 1)

        pool.wait(seen.append)

        assert seen
        assert all(p is pool for p in seen)

    def test_tick_callback_can_stop_the_pool(self, pool):
        """Test stopping early from the tick callback."""
        fired = []
        for _ in range(3):
            pool.add(lambda: time.sleep(10)).then(fired.append).catch(fired.append)

        start_time = time.monotonic()
        results = pool.wait(lambda p: p.elapsed > 0.2)

        assert results == []
        assert time.monotonic() - start_time < 5
        assert fired == []
        assert pool.get_in_progress() == []
        assert len(pool.get_failed()) == 3
        assert all(isinstance(p.error, AbnormalExitError) for p in pool.get_failed())

    def test_second_wait_replays_results(self, pool):
        """Test that a drained pool returns its results again without rerunning anything."""
        calls = []
        for i in range(3):
            pool.add(lambda i=i: i).then(calls.append)

        first = pool.wait()
        second = pool.wait()

        assert first == second == [0, 1, 2]
        assert sorted(calls) == [0, 1, 2]
        assert pool.loop_state is PoolState.DRAINED

    def test_rejects_changes_after_wait(self, pool):
        """Test that a pool cannot be reconfigured once waited on."""
        handle = pool.add(lambda: 1)
        pool.wait()

        with pytest.raises(PoolStateError):
            pool.add(lambda: 2)
        with pytest.raises(PoolStateError):
            pool.concurrency(1)
        with pytest.raises(PoolStateError):
            pool.timeout(5)
        with pytest.raises(PoolStateError):
            handle.then(print)

    def test_callback_error_stops_the_pool(self, pool):
        """Test that a failing callback propagates and leaves no children behind."""

        def explode(_):
            raise RuntimeError("callback failed")

        pool.add(lambda: 1).then(explode)
        pool.add(lambda: time.sleep(10))

        with pytest.raises(RuntimeError, match="callback failed"):
            pool.wait()

        assert pool.get_in_progress() == []
        assert pool.loop_state is PoolState.DRAINED

    def test_context_manager_stops_children(self):
        """Test that leaving the with block kills in-flight processes."""
        with Pool.create() as pool:
            pool.add(lambda: time.sleep(10))
            pool._begin()
            pool._admit()
            pid = pool.get_in_progress()[0].pid

        assert pool.get_in_progress() == []
        with pytest.raises(ChildProcessError):
            os.waitpid(pid, os.WNOHANG)

    def test_state_dump(self, pool):
        """Test the human-readable pool dump."""
        pool.add(lambda: 1)
        pool.add(lambda: 1 / 0)

        assert "2 pending" in pool.state()
        pool.wait()

        state = pool.state()
        logger.info(f"Pool state:\n{state}")
        assert "1 successful" in state
        assert "1 failed" in state
        assert "ZeroDivisionError" in state
        assert pool.status() == state

        stats = pool.get_stats()
        assert stats.successful == 1
        assert stats.failed == 1
        assert stats.pending == 0
        assert stats.state == "drained"

    @pytest.mark.asyncio
    async def test_wait_async_does_not_block_the_loop(self, pool):
        """Test waiting from inside an event loop."""
        ticks = 0

        async def heartbeat():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        for i in range(3):
            pool.add(lambda i=i: time.sleep(0.3) or i)

        beat = asyncio.create_task(heartbeat())
        results = await pool.wait_async()
        beat.cancel()

        assert results == [0, 1, 2]
        assert ticks > 5
        logger.info(f"Event loop ticked {ticks} times while waiting")


class TestFallbackEquivalence:
    """Test that inline execution matches forked execution."""

    @pytest.mark.parametrize("mode", [ExecutionMode.FORCE_ASYNC, ExecutionMode.FORCE_SYNC])
    def test_same_outcomes(self, mode):
        """Test identical then/catch outcomes in both modes."""
        pool = Pool.create(execution_mode=mode)
        outcomes = {}

        def fail():
            raise KeyError("missing")

        pool.add(lambda: {"value": 2}).then(lambda r: outcomes.update(success=("then", r)))
        pool.add(fail).catch(lambda e: outcomes.update(failure=("catch", type(e).__name__, e.error_type)))
        pool.add(lambda: (lambda: None)).catch(lambda e: outcomes.update(unserializable=("catch", type(e).__name__)))
        pool.add(lambda: sys.exit(3)).catch(lambda e: outcomes.update(exited=("catch", type(e).__name__, e.exit_code)))
        pool.add(lambda: 5).then(lambda r: outcomes.update(after_exit=("then", r)))
        pool.wait()

        assert pool.asynchronous is (mode is ExecutionMode.FORCE_ASYNC)
        assert outcomes == {
            "success": ("then", {"value": 2}),
            "failure": ("catch", "ExecutionError", "KeyError"),
            "unserializable": ("catch", "AbnormalExitError"),
            "exited": ("catch", "AbnormalExitError", 3),
            "after_exit": ("then", 5),
        }
