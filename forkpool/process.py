"""Task execution in a forked child process"""
import contextlib
import os
import signal
import sys
import time
import traceback
from typing import NoReturn

from loguru import logger

from .base import BaseProcess
from .channel import ResultChannel
from .exceptions import AbnormalExitError, ChannelDecodeError, PoolStateError, ProcessTimeoutError, ResultEncodeError
from .task import exit_status, invoke
from .types import ProcessStatus, TaskInfo

# Child exit codes that explain a missing result, from sysexits.h
EXIT_UNSERIALIZABLE = 65
EXIT_CRASHED = 70

_EXIT_REASONS = {
    EXIT_UNSERIALIZABLE: "result could not be serialized",
    EXIT_CRASHED: "worker failed outside the task",
}

_REAP_INTERVAL = 0.005


def is_supported() -> bool:
    """Check whether this platform can fork and signal child processes"""
    return all(hasattr(os, name) for name in ("fork", "waitpid", "kill", "WNOHANG")) and hasattr(signal, "SIGKILL")


def abnormal_exit(exit_code: int, pid: int | None = None, detail: str | None = None) -> AbnormalExitError:
    """Error for a worker that exited with exit_code without leaving a result"""
    return AbnormalExitError.from_exit_code(exit_code, pid=pid, reason=_EXIT_REASONS.get(exit_code, detail))


class ParallelProcess(BaseProcess):
    """Runs a task in a forked copy of the current process.

    The child inherits the task through the fork, so only the result has to
    be serialized. It is written to a ResultChannel allocated before the fork
    and read by the parent once waitpid() reports the child gone.
    """

    asynchronous = True

    def __init__(self, task: TaskInfo, capture_output: bool = True, kill_grace_period: float = 0.5):
        super().__init__(task, capture_output)
        self.kill_grace_period = kill_grace_period
        self._channel: ResultChannel | None = None

    def start(self) -> None:
        if self.status is not ProcessStatus.PENDING:
            raise PoolStateError(f"Task {self.id} was already started")

        channel = ResultChannel()
        # Unflushed parent output would otherwise be written again by the child
        for stream in (sys.stdout, sys.stderr):
            if stream is not None:
                stream.flush()

        try:
            pid = os.fork()
        except OSError:
            channel.close()
            raise

        if pid == 0:
            self._run_child(channel)

        self.pid = pid
        self._channel = channel
        self._transition(ProcessStatus.RUNNING)
        logger.debug(f"Launched task {self.id} ({self.task.name}) as pid {pid}")

    def _run_child(self, channel: ResultChannel) -> NoReturn:
        exit_code = EXIT_CRASHED
        try:
            signal.signal(signal.SIGTERM, signal.SIG_DFL)
            signal.signal(signal.SIGINT, signal.SIG_DFL)

            try:
                result = invoke(self.task, capture_output=self.capture_output)
            except SystemExit as e:
                exit_code = exit_status(e)
                return
            try:
                channel.write(result)
                exit_code = 0
            except ResultEncodeError:
                traceback.print_exc()
                exit_code = EXIT_UNSERIALIZABLE
        finally:
            for stream in (sys.stdout, sys.stderr):
                with contextlib.suppress(Exception):
                    stream.flush()
            # No interpreter teardown: atexit hooks and finalizers belong to the parent
            os._exit(exit_code)

    def poll(self) -> bool:
        if self.status is not ProcessStatus.RUNNING:
            return self.is_finished

        try:
            pid, wait_status = os.waitpid(self.pid, os.WNOHANG)
        except ChildProcessError:
            self._close_channel()
            self._fail(AbnormalExitError(f"Process {self.pid} was reaped outside the pool", pid=self.pid))
            return True

        if pid == 0:
            return False

        self.exit_code = os.waitstatus_to_exitcode(wait_status)
        self._collect()
        return True

    def _collect(self) -> None:
        try:
            result = self._channel.read()
        except ChannelDecodeError as e:
            self._fail(abnormal_exit(self.exit_code, pid=self.pid, detail=str(e)))
        else:
            self._resolve(result)
        finally:
            self._close_channel()

    def enforce_timeout(self, now: float) -> bool:
        if self.status is not ProcessStatus.RUNNING or self.timeout is None:
            return False

        elapsed = now - self.started_at
        if elapsed <= self.timeout:
            return False

        logger.warning(f"Task {self.id} (pid {self.pid}) exceeded its {self.timeout}s timeout, killing it")
        self._kill()
        self._close_channel()
        self.error = ProcessTimeoutError(self.timeout, elapsed, pid=self.pid)
        self._transition(ProcessStatus.TIMED_OUT)
        return True

    def terminate(self) -> None:
        if self.status is not ProcessStatus.RUNNING:
            return

        self._kill()
        self._close_channel()
        self._fail(AbnormalExitError(f"Process {self.pid} was stopped with its pool", exit_code=self.exit_code, pid=self.pid))

    def _kill(self) -> None:
        """SIGTERM the child, escalate to SIGKILL after the grace period, then reap it"""
        with contextlib.suppress(ProcessLookupError):
            os.kill(self.pid, signal.SIGTERM)
        if self._reap(self.kill_grace_period):
            return

        logger.warning(f"Process {self.pid} ignored SIGTERM for {self.kill_grace_period}s, sending SIGKILL")
        with contextlib.suppress(ProcessLookupError):
            os.kill(self.pid, signal.SIGKILL)
        self._reap(None)

    def _reap(self, timeout: float | None) -> bool:
        """Wait for the child to exit. Blocks indefinitely when timeout is None."""
        deadline = None if timeout is None else time.monotonic() + timeout
        options = 0 if deadline is None else os.WNOHANG

        while True:
            try:
                pid, wait_status = os.waitpid(self.pid, options)
            except ChildProcessError:
                return True

            if pid != 0:
                self.exit_code = os.waitstatus_to_exitcode(wait_status)
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(_REAP_INTERVAL)

    def _close_channel(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None
