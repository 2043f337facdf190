"""Task contract: what a pool accepts and how a worker runs it"""
import contextlib
import inspect
import io
import traceback
from abc import ABC, abstractmethod
from typing import Any

from .exceptions import InvalidTaskError
from .types import ErrorPayload, SerializedResult, TaskInfo, TaskKind


class Task(ABC):
    """Base class for task objects.

    Subclasses implement run(). configure() is called first, inside the
    worker, so it can set up state that must not be built in the parent.
    """

    def configure(self) -> None:  # noqa: B027
        """Prepare the task inside the worker"""

    @abstractmethod
    def run(self) -> Any:
        """Do the work and return the result"""


def _check_zero_arguments(target: Any) -> None:
    try:
        signature = inspect.signature(target)
    except (TypeError, ValueError):
        # Some builtins have no introspectable signature
        return

    try:
        signature.bind()
    except TypeError as e:
        raise InvalidTaskError(f"{_describe(target)} must be invokable without arguments: {e}") from e


def _describe(target: Any) -> str:
    name = getattr(target, "__qualname__", None)
    return name if name else f"{type(target).__qualname__} object"


def wrap(target: Any, task_id: int, timeout: float | None = None) -> TaskInfo:
    """Validate a task target and wrap it.

    Args:
        target: A zero-argument callable or a Task instance
        task_id: Identity of the task within its pool
        timeout: Optional per-task timeout override in seconds

    Returns:
        The wrapped task

    Raises:
        InvalidTaskError: If the target is neither a Task nor a zero-argument callable
    """
    if isinstance(target, Task):
        kind = TaskKind.INVOKABLE
    elif isinstance(target, type) and issubclass(target, Task):
        raise InvalidTaskError(f"{target.__qualname__} is a Task class, pass an instance of it instead")
    elif callable(target):
        _check_zero_arguments(target)
        kind = TaskKind.CALLABLE
    else:
        raise InvalidTaskError(f"{_describe(target)} is neither callable nor a Task")

    if timeout is not None and timeout <= 0:
        raise ValueError(f"Task timeout must be positive, got {timeout}")

    return TaskInfo(id=task_id, target=target, kind=kind, timeout=timeout)


def _call(task: TaskInfo) -> Any:
    if task.kind is TaskKind.INVOKABLE:
        task.target.configure()
        return task.target.run()
    return task.target()


def exit_status(exit: SystemExit) -> int:
    """Exit code the interpreter would report for an uncaught SystemExit"""
    if exit.code is None:
        return 0
    if isinstance(exit.code, int):
        return exit.code & 0xFF
    return 1


def invoke(task: TaskInfo, capture_output: bool = True) -> SerializedResult:
    """Run a task and capture its return value or the exception it raised"""
    buffer = io.StringIO()
    redirect = contextlib.redirect_stdout(buffer) if capture_output else contextlib.nullcontext()

    try:
        with redirect:
            value = _call(task)
    except Exception as e:
        error = ErrorPayload(
            error_type=type(e).__name__,
            message=str(e),
            traceback=traceback.format_exc(),
            exception=e,
        )
        return SerializedResult.failure(error, output=buffer.getvalue())

    return SerializedResult.success(value, output=buffer.getvalue())
