"""Process pool that runs tasks in forked children with timeouts and callbacks"""
from .base import BaseProcess
from .callbacks import CallbackRegistry, TaskHandle
from .config import load_pool_config
from .exceptions import (
    AbnormalExitError,
    ExecutionError,
    InvalidTaskError,
    PoolError,
    PoolStateError,
    ProcessTimeoutError,
)
from .pool import Pool, PoolState
from .process import ParallelProcess, is_supported
from .sync_process import SynchronousProcess
from .task import Task, invoke, wrap
from .types import ExecutionMode, PoolConfig, PoolStats, ProcessStatus, SerializedResult, TaskInfo

__all__ = [
    "Pool",
    "PoolState",
    "PoolConfig",
    "PoolStats",
    "ExecutionMode",
    "ProcessStatus",
    "Task",
    "TaskInfo",
    "TaskHandle",
    "CallbackRegistry",
    "SerializedResult",
    "BaseProcess",
    "ParallelProcess",
    "SynchronousProcess",
    "PoolError",
    "PoolStateError",
    "InvalidTaskError",
    "ExecutionError",
    "AbnormalExitError",
    "ProcessTimeoutError",
    "is_supported",
    "invoke",
    "wrap",
    "load_pool_config",
]
