"""Length-prefixed JSON framing used by the remote debugging protocol.

Wire format::

    <decimal byte length>:<utf-8 JSON payload>

A frame is only consumed once the whole prefix and payload are buffered.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from .errors import FrameError

SEPARATOR = b":"

JsonDict = Dict[str, Any]


@dataclass
class FrameResult:
    message: Optional[JsonDict]
    remainder: bytes
    error: Optional[FrameError] = None

    @property
    def fatal(self) -> bool:
        return bool(self.error and self.error.fatal)


def encode_frame(message: JsonDict) -> bytes:
    payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
    return str(len(payload)).encode("ascii") + SEPARATOR + payload


def try_read_frame(buffer: bytes) -> FrameResult:
    """Attempt to decode one frame from the head of ``buffer``."""

    sep = buffer.find(SEPARATOR)
    if sep < 0:
        if buffer and not buffer.isdigit():
            return FrameResult(None, buffer, FrameError("invalid frame length prefix", fatal=True))
        return FrameResult(None, buffer)
    prefix = buffer[:sep]
    if not prefix or not prefix.isdigit():
        return FrameResult(
            None,
            buffer,
            FrameError(f"invalid frame length prefix: {prefix[:32]!r}", fatal=True),
        )
    length = int(prefix)
    start = sep + 1
    end = start + length
    if len(buffer) < end:
        return FrameResult(None, buffer)
    payload = buffer[start:end]
    remainder = buffer[end:]
    try:
        message = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        return FrameResult(None, remainder, FrameError(f"invalid frame payload: {exc}", fatal=False))
    if not isinstance(message, dict):
        return FrameResult(
            None,
            remainder,
            FrameError(f"frame payload is not an object: {type(message).__name__}", fatal=False),
        )
    return FrameResult(message, remainder)


class FrameReader:
    """Append-only receive buffer yielding decoded frames."""

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> None:
        self._buffer += chunk

    def frames(self) -> Iterator[FrameResult]:
        """Yield results until no complete frame remains.

        Stops after a fatal error; the buffer is left untouched in that case.
        """
        while True:
            result = try_read_frame(self._buffer)
            self._buffer = result.remainder
            if result.error is None and result.message is None:
                return
            yield result
            if result.fatal:
                return


__all__ = ["FrameResult", "FrameReader", "encode_frame", "try_read_frame"]
