"""Result transfer between a worker process and the pool.

A result travels as one frame: an 8 byte big-endian length followed by
the pickled SerializedResult. The frame is written to an anonymous temp
file opened before the fork, so parent and child share the descriptor
and the child never blocks on a full pipe.
"""
import dataclasses
import pickle
import struct
import tempfile

from .exceptions import ChannelDecodeError, ResultEncodeError
from .types import SerializedResult

HEADER = struct.Struct(">Q")


def _survives_pickling(exception: BaseException) -> bool:
    try:
        pickle.loads(pickle.dumps(exception, protocol=pickle.HIGHEST_PROTOCOL))
    except Exception:
        return False
    return True


def encode(result: SerializedResult) -> bytes:
    """Serialize a result into a frame.

    A failure whose exception object cannot make the trip is sent with the
    type, message and traceback only.

    Raises:
        ResultEncodeError: If the result cannot be pickled
    """
    if not result.ok and result.error is not None and result.error.exception is not None:
        if not _survives_pickling(result.error.exception):
            result = dataclasses.replace(result, error=dataclasses.replace(result.error, exception=None))

    try:
        body = pickle.dumps(result, protocol=pickle.HIGHEST_PROTOCOL)
    except Exception as e:
        kind = type(result.value).__name__ if result.ok else "error"
        raise ResultEncodeError(f"Task result of type {kind} cannot be pickled: {e}") from e

    return HEADER.pack(len(body)) + body


def decode(data: bytes) -> SerializedResult:
    """Deserialize a frame written by encode().

    Raises:
        ChannelDecodeError: If the frame is empty, truncated or not a result
    """
    if len(data) < HEADER.size:
        raise ChannelDecodeError("No result was written")

    (length,) = HEADER.unpack_from(data)
    body = data[HEADER.size :]
    if len(body) != length:
        raise ChannelDecodeError(f"Result frame is truncated: expected {length} bytes, got {len(body)}")

    try:
        result = pickle.loads(body)
    except Exception as e:
        raise ChannelDecodeError(f"Result could not be unpickled: {e}") from e

    if not isinstance(result, SerializedResult):
        raise ChannelDecodeError(f"Unexpected payload of type {type(result).__name__}")
    return result


class ResultChannel:
    """One-shot result channel shared across a fork"""

    def __init__(self):
        self._file = tempfile.TemporaryFile(prefix="forkpool-", buffering=0)

    @property
    def closed(self) -> bool:
        return self._file.closed

    def write(self, result: SerializedResult) -> None:
        """Write a result frame. Called once, in the child."""
        view = memoryview(encode(result))
        while view:
            written = self._file.write(view)
            view = view[written:]

    def read(self) -> SerializedResult:
        """Read the frame back. Called in the parent after the child exited."""
        self._file.seek(0)
        return decode(self._file.read())

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()
