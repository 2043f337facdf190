"""Base class for the execution of a single task"""
import time
from abc import ABC, abstractmethod
from typing import Any

from .exceptions import ExecutionError, PoolError, PoolStateError
from .types import ProcessStatus, SerializedResult, TaskInfo

_TRANSITIONS: dict[ProcessStatus, frozenset[ProcessStatus]] = {
    ProcessStatus.PENDING: frozenset({ProcessStatus.RUNNING}),
    ProcessStatus.RUNNING: frozenset({ProcessStatus.SUCCESSFUL, ProcessStatus.FAILED, ProcessStatus.TIMED_OUT}),
}


class BaseProcess(ABC):
    """Abstract base class for running one task.

    Both the forking and the inline implementation share this lifecycle, so
    the pool polls and retires them the same way.
    """

    asynchronous: bool = False

    def __init__(self, task: TaskInfo, capture_output: bool = True):
        self.task = task
        self.timeout: float | None = task.timeout
        self.capture_output = capture_output
        self.status = ProcessStatus.PENDING

        self.pid: int | None = None
        self.exit_code: int | None = None
        self.started_at: float | None = None
        self.finished_at: float | None = None

        self.result: Any = None
        self.error: PoolError | None = None
        self.output: str = ""

    @property
    def id(self) -> int:
        return self.task.id

    @abstractmethod
    def start(self) -> None:
        """Begin executing the task"""

    @abstractmethod
    def poll(self) -> bool:
        """Check for completion without blocking. Returns True once terminal."""

    @abstractmethod
    def enforce_timeout(self, now: float) -> bool:
        """Kill the process if it ran past its timeout. Returns True if it was killed."""

    @abstractmethod
    def terminate(self) -> None:
        """Stop a running process as part of pool teardown"""

    @property
    def is_running(self) -> bool:
        return self.status is ProcessStatus.RUNNING

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def elapsed(self) -> float:
        """Seconds since the process started, frozen once it finished"""
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def _transition(self, status: ProcessStatus) -> None:
        if status not in _TRANSITIONS.get(self.status, frozenset()):
            raise PoolStateError(f"Task {self.id} cannot move from {self.status.value} to {status.value}")

        self.status = status
        if status is ProcessStatus.RUNNING:
            self.started_at = time.monotonic()
        elif status.is_terminal:
            self.finished_at = time.monotonic()

    def _resolve(self, result: SerializedResult) -> None:
        """Apply a decoded result"""
        self.output = result.output
        if result.ok:
            self.result = result.value
            self._transition(ProcessStatus.SUCCESSFUL)
        else:
            self.error = ExecutionError.from_payload(result.error)
            self._transition(ProcessStatus.FAILED)

    def _fail(self, error: PoolError) -> None:
        self.error = error
        self._transition(ProcessStatus.FAILED)

    def describe(self) -> str:
        """One line summary for pool state dumps"""
        line = f"#{self.id} {self.task.name} {self.status.value}"
        if self.pid is not None:
            line += f" pid={self.pid}"
        if self.started_at is not None:
            line += f" elapsed={self.elapsed:.2f}s"
        if self.error is not None:
            line += f" error={type(self.error).__name__}: {self.error}"
        return line

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.describe()}>"
