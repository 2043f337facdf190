"""Type definitions for the fork pool"""
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProcessStatus(Enum):
    """Lifecycle state of a process. Transitions only move forward."""

    PENDING = "pending"  # Queued, not yet forked
    RUNNING = "running"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessStatus.SUCCESSFUL, ProcessStatus.FAILED, ProcessStatus.TIMED_OUT)


class ExecutionMode(Enum):
    """How a pool executes its tasks"""

    AUTO = "auto"  # Fork when the platform supports it, otherwise run inline
    FORCE_SYNC = "force_sync"
    FORCE_ASYNC = "force_async"


class TaskKind(Enum):
    """Which invocation contract a task target satisfies"""

    CALLABLE = "callable"
    INVOKABLE = "invokable"  # A forkpool.task.Task instance


class PoolConfig(BaseModel):
    """Configuration for a pool"""

    model_config = ConfigDict(validate_assignment=True)

    name: str = Field(default="pool", description="Pool name for identification")
    concurrency: int | None = Field(default=None, description="Maximum number of running processes, None for no limit")
    timeout: float | None = Field(default=None, gt=0, description="Default per-process timeout in seconds")
    sleep_time: float = Field(default=0.01, gt=0, description="Pause between polling ticks in seconds")
    kill_grace_period: float = Field(default=0.5, ge=0, description="Time between SIGTERM and SIGKILL for a timed out process")
    execution_mode: ExecutionMode = Field(default=ExecutionMode.AUTO)
    capture_output: bool = Field(default=True, description="Capture task stdout into the process output buffer")

    @field_validator("concurrency")
    @classmethod
    def _unbounded_when_not_positive(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            return None
        return value


class PoolStats(BaseModel):
    """Counters for a pool"""

    name: str
    asynchronous: bool
    state: str
    pending: int
    running: int
    successful: int
    failed: int
    timed_out: int
    concurrency: int | None = None
    timeout: float | None = None
    elapsed_seconds: float = 0.0


@dataclass
class TaskInfo:
    """A validated unit of work"""

    id: int
    target: Callable[[], Any] | Any
    kind: TaskKind
    timeout: float | None = None

    @property
    def name(self) -> str:
        target = self.target
        return getattr(target, "__qualname__", None) or type(target).__qualname__


@dataclass
class ErrorPayload:
    """Description of an exception raised by a task"""

    error_type: str
    message: str
    traceback: str = ""
    exception: BaseException | None = None  # Only set when the original survived pickling


@dataclass
class SerializedResult:
    """What a task produced: exactly one of value or error"""

    ok: bool
    value: Any = None
    error: ErrorPayload | None = None
    output: str = ""

    @classmethod
    def success(cls, value: Any, output: str = "") -> "SerializedResult":
        return cls(ok=True, value=value, output=output)

    @classmethod
    def failure(cls, error: ErrorPayload, output: str = "") -> "SerializedResult":
        return cls(ok=False, error=error, output=output)
