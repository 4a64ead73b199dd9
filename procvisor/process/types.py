"""
Type definitions shared by the process supervisor.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import IO, Any, TypeAlias


class Status(StrEnum):
    """Lifecycle of a supervised process."""

    READY = "ready"
    STARTED = "started"
    TERMINATED = "terminated"


class StreamTag(StrEnum):
    """Which child stream a chunk came from."""

    OUT = "out"
    ERR = "err"


# Chunk of bytes read from one stream in one drain operation.
Chunk: TypeAlias = tuple[StreamTag, bytes]

# Client callback, invoked per chunk in arrival order.
OutputCallback: TypeAlias = Callable[[StreamTag, bytes], Any]

# Normalized input: literal bytes or a readable stream.
InputSource: TypeAlias = bytes | IO[Any]


__all__ = [
    "Chunk",
    "InputSource",
    "OutputCallback",
    "Status",
    "StreamTag",
]
