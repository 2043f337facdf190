"""
Exceptions raised and delivered by the fork pool
"""
import signal

from .types import ErrorPayload


class PoolError(Exception):
    """Base exception for pool-related errors"""


class PoolStateError(PoolError, RuntimeError):
    """Raised when the pool or a process is used in a state that does not allow it"""


class InvalidTaskError(PoolError, TypeError):
    """Raised when a task target cannot be invoked without arguments"""


class ExecutionError(PoolError):
    """A task raised while running. Delivered to catch callbacks, never raised by wait()."""

    def __init__(self, error_type: str, message: str, remote_traceback: str = "", exception: BaseException | None = None):
        super().__init__(f"{error_type}: {message}" if message else error_type)
        self.error_type = error_type
        self.message = message
        self.remote_traceback = remote_traceback
        self.exception = exception

    @classmethod
    def from_payload(cls, payload: ErrorPayload) -> "ExecutionError":
        return cls(payload.error_type, payload.message, payload.traceback, payload.exception)


class AbnormalExitError(PoolError):
    """A process ended without leaving a decodable result"""

    def __init__(self, message: str, exit_code: int | None = None, pid: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.pid = pid

    @classmethod
    def from_exit_code(cls, exit_code: int, pid: int | None = None, reason: str | None = None) -> "AbnormalExitError":
        subject = f"Process {pid}" if pid is not None else "Inline task"
        if exit_code < 0:
            try:
                name = signal.Signals(-exit_code).name
            except ValueError:
                name = str(-exit_code)
            message = f"{subject} was killed by signal {name}"
        else:
            message = f"{subject} exited abnormally with exit code {exit_code}"
        if reason:
            message = f"{message} ({reason})"
        return cls(message, exit_code=exit_code, pid=pid)


class ProcessTimeoutError(PoolError, TimeoutError):
    """A process ran longer than its timeout and was killed"""

    def __init__(self, timeout: float, elapsed: float, pid: int | None = None):
        super().__init__(f"Process {pid} timed out after {elapsed:.2f}s (limit {timeout}s)")
        self.timeout = timeout
        self.elapsed = elapsed
        self.pid = pid


class ChannelDecodeError(PoolError):
    """Raised when a result frame is missing, truncated or cannot be unpickled"""


class ResultEncodeError(PoolError):
    """Raised when a task result cannot be pickled"""
