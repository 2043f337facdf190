"""Inline task execution for hosts that cannot fork"""
from .base import BaseProcess
from .channel import decode, encode
from .exceptions import AbnormalExitError, ChannelDecodeError, PoolStateError, ResultEncodeError
from .process import EXIT_UNSERIALIZABLE, abnormal_exit
from .task import exit_status, invoke
from .types import ProcessStatus


class SynchronousProcess(BaseProcess):
    """Runs a task in the calling process as soon as it is started.

    The result makes the same pickle round trip a forked result makes, so
    callbacks see an equivalent copy and the same error classification.
    A task calling sys.exit() fails with the exit code a forked worker
    would have reported. A running task cannot be preempted, so timeouts
    never fire.
    """

    asynchronous = False

    def start(self) -> None:
        if self.status is not ProcessStatus.PENDING:
            raise PoolStateError(f"Task {self.id} was already started")

        self._transition(ProcessStatus.RUNNING)
        try:
            result = invoke(self.task, capture_output=self.capture_output)
        except SystemExit as e:
            self.exit_code = exit_status(e)
            self._fail(abnormal_exit(self.exit_code, detail="No result was written"))
            return

        try:
            result = decode(encode(result))
        except (ResultEncodeError, ChannelDecodeError) as e:
            self.exit_code = EXIT_UNSERIALIZABLE
            self._fail(abnormal_exit(EXIT_UNSERIALIZABLE, detail=str(e)))
            return

        self._resolve(result)

    def poll(self) -> bool:
        return self.is_finished

    def enforce_timeout(self, now: float) -> bool:
        return False

    def terminate(self) -> None:
        # Only reachable when start() was interrupted, e.g. by KeyboardInterrupt
        if self.status is ProcessStatus.RUNNING:
            self._fail(AbnormalExitError(f"Task {self.id} was interrupted while running inline"))
