"""Callback registration and dispatch"""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from .base import BaseProcess
from .types import ProcessStatus

if TYPE_CHECKING:
    from .pool import Pool


class CallbackKind(Enum):
    """Outcome a callback listens for"""

    SUCCESS = "then"
    FAILURE = "catch"
    TIMEOUT = "timeout"


_KIND_BY_STATUS = {
    ProcessStatus.SUCCESSFUL: CallbackKind.SUCCESS,
    ProcessStatus.FAILED: CallbackKind.FAILURE,
    ProcessStatus.TIMED_OUT: CallbackKind.TIMEOUT,
}


class CallbackRegistry:
    """Callbacks per task id, invoked once when the task retires"""

    def __init__(self):
        self._callbacks: dict[int, dict[CallbackKind, list[Callable[..., Any]]]] = defaultdict(lambda: defaultdict(list))

    def register(self, task_id: int, kind: CallbackKind, callback: Callable[..., Any]) -> None:
        if not callable(callback):
            raise TypeError(f"{kind.value} callback must be callable, got {type(callback).__name__}")
        self._callbacks[task_id][kind].append(callback)

    def get(self, task_id: int, kind: CallbackKind) -> list[Callable[..., Any]]:
        if task_id not in self._callbacks:
            return []
        return list(self._callbacks[task_id].get(kind, []))

    def dispatch(self, process: BaseProcess) -> int:
        """Invoke the callbacks matching the process outcome.

        Successful processes pass their result, failed ones their error and
        timed out ones nothing. The task's entry is dropped afterwards.

        Returns:
            Number of callbacks invoked
        """
        kind = _KIND_BY_STATUS.get(process.status)
        if kind is None:
            return 0

        callbacks = self._callbacks.pop(process.id, {}).get(kind, [])
        for callback in callbacks:
            if kind is CallbackKind.SUCCESS:
                callback(process.result)
            elif kind is CallbackKind.FAILURE:
                callback(process.error)
            else:
                callback()
        return len(callbacks)

    def discard(self, task_id: int) -> None:
        self._callbacks.pop(task_id, None)


class TaskHandle:
    """Fluent handle for one task added to a pool"""

    def __init__(self, pool: Pool, process: BaseProcess):
        self._pool = pool
        self.process = process

    @property
    def id(self) -> int:
        return self.process.id

    @property
    def status(self) -> ProcessStatus:
        return self.process.status

    def then(self, callback: Callable[[Any], Any]) -> TaskHandle:
        """Call callback(result) when the task succeeds"""
        return self._register(CallbackKind.SUCCESS, callback)

    def catch(self, callback: Callable[[Exception], Any]) -> TaskHandle:
        """Call callback(error) when the task fails or its process dies"""
        return self._register(CallbackKind.FAILURE, callback)

    def timeout(self, callback: Callable[[], Any]) -> TaskHandle:
        """Call callback() when the task is killed for running too long"""
        return self._register(CallbackKind.TIMEOUT, callback)

    def set_timeout(self, seconds: float) -> TaskHandle:
        """Override the pool's default timeout for this task"""
        self._pool._ensure_configurable()
        if seconds is None or seconds <= 0:
            raise ValueError(f"Task timeout must be positive, got {seconds}")
        self.process.task.timeout = seconds
        self.process.timeout = seconds
        return self

    def _register(self, kind: CallbackKind, callback: Callable[..., Any]) -> TaskHandle:
        self._pool._ensure_configurable()
        self._pool.callbacks.register(self.id, kind, callback)
        return self

    def __repr__(self) -> str:
        return f"<TaskHandle #{self.id} {self.status.value}>"
