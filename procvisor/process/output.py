from __future__ import annotations

from dataclasses import dataclass, field

from procvisor.process.types import StreamTag


@dataclass(slots=True)
class _Buffer:
    data: bytearray = field(default_factory=bytearray)
    # offset of the first byte not yet returned by the incremental accessor
    cursor: int = 0


@dataclass(slots=True)
class OutputSink:
    """Append-only stdout/stderr buffers with independent incremental cursors."""

    _buffers: dict[StreamTag, _Buffer] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._buffers = {tag: _Buffer() for tag in StreamTag}

    def append(self, tag: StreamTag, data: bytes) -> None:
        self._buffers[tag].data.extend(data)

    def read(self, tag: StreamTag) -> bytes:
        return bytes(self._buffers[tag].data)

    def read_incremental(self, tag: StreamTag) -> bytes:
        """Bytes appended since the previous incremental read of `tag`."""
        buffer = self._buffers[tag]
        chunk = bytes(buffer.data[buffer.cursor :])
        buffer.cursor = len(buffer.data)
        return chunk

    def clear(self, tag: StreamTag) -> None:
        buffer = self._buffers[tag]
        buffer.data.clear()
        buffer.cursor = 0


__all__ = ["OutputSink"]
