"""
Non-blocking multiplexing of the child's standard streams.

Every tick runs one readiness check over all open endpoints and reads at most one
chunk per ready stream, so a child blocked writing to one pipe is never starved
while another pipe is read to exhaustion.
"""

from __future__ import annotations

import contextlib
import errno
import io
import os
import selectors
import time
from collections.abc import Mapping
from enum import Enum, auto
from typing import IO, Any, Protocol

from procvisor.process.tty import StdioWiring
from procvisor.process.types import Chunk, InputSource, StreamTag

CHUNK_SIZE = 8192


class _Role(Enum):
    OUTPUT = auto()
    STATUS = auto()
    STDIN = auto()
    INPUT = auto()


class Multiplexer(Protocol):
    status_report: bytes

    @property
    def is_done(self) -> bool: ...

    def poll(self, timeout: float) -> list[Chunk]: ...

    def drain(self) -> list[Chunk]: ...

    def close(self) -> None: ...


class InputFeeder:
    """Bytes pending for the child's stdin, refilled from a stream a chunk at a time."""

    def __init__(self, source: InputSource | None, chunk_size: int = CHUNK_SIZE) -> None:
        self._chunk_size = chunk_size
        self.pending = bytearray()
        self._stream: IO[Any] | None = None
        self.stream_fd: int | None = None

        if isinstance(source, bytes):
            self.pending.extend(source)
        elif source is not None:
            self._stream = source
            self.stream_fd = _fileno(source)

    @property
    def exhausted(self) -> bool:
        return self._stream is None and not self.pending

    def pump(self) -> None:
        """Refill from a stream without a descriptor; reads of in-memory streams never block."""
        if self._stream is not None and self.stream_fd is None and not self.pending:
            self._accept(self._stream.read(self._chunk_size))

    def read_ready(self) -> None:
        """Refill from a descriptor the selector reported readable."""
        if self.stream_fd is None or self.pending:
            return
        try:
            data = os.read(self.stream_fd, self._chunk_size)
        except BlockingIOError:
            return
        self._accept(data)

    def consume(self, count: int) -> None:
        del self.pending[:count]

    def discard(self) -> None:
        self.pending.clear()
        self._stream = None
        self.stream_fd = None

    def _accept(self, data: bytes | str | None) -> None:
        if not data:
            # EOF
            self._stream = None
            self.stream_fd = None
            return
        self.pending.extend(data.encode() if isinstance(data, str) else data)


class PipeMultiplexer:
    """Owns the parent-side pipe / PTY descriptors of one child."""

    def __init__(
        self,
        readers: Mapping[int, StreamTag],
        *,
        stdin_fd: int | None = None,
        input_source: InputSource | None = None,
        status_fd: int | None = None,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self._chunk_size = chunk_size
        self._selector = selectors.DefaultSelector()
        self._closed = False
        self._status = bytearray()

        for fd, tag in readers.items():
            os.set_blocking(fd, False)
            self._selector.register(fd, selectors.EVENT_READ, (_Role.OUTPUT, tag))
        if status_fd is not None:
            os.set_blocking(status_fd, False)
            self._selector.register(status_fd, selectors.EVENT_READ, (_Role.STATUS, None))

        self._feeder = InputFeeder(input_source, chunk_size)
        self._stdin_fd = stdin_fd
        if stdin_fd is not None:
            os.set_blocking(stdin_fd, False)
        self._sync_input()

    @property
    def status_report(self) -> bytes:
        return bytes(self._status)

    @property
    def is_done(self) -> bool:
        """True once every read end reported end-of-stream."""
        if self._closed:
            return True
        return not any(
            key.data[0] in (_Role.OUTPUT, _Role.STATUS)
            for key in self._selector.get_map().values()
        )

    def poll(self, timeout: float) -> list[Chunk]:
        """One tick: bounded wait on readiness, then one chunk per ready stream."""
        chunks, _ = self._tick(timeout)
        return chunks

    def drain(self) -> list[Chunk]:
        """Collect everything already buffered; used once the child has exited."""
        chunks: list[Chunk] = []
        while not self.is_done:
            batch, progressed = self._tick(0)
            chunks.extend(batch)
            if not progressed:
                # remaining write ends are held open by someone else
                break
        return chunks

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for key in list(self._selector.get_map().values()):
            if key.data[0] is not _Role.INPUT:
                self._close_fd(key.fd)
        self._close_stdin()
        self._selector.close()

    # --- internals -------------------------------------------------------------------------------

    def _tick(self, timeout: float) -> tuple[list[Chunk], bool]:
        if self._closed:
            return [], False

        self._feeder.pump()
        self._sync_input()

        if not self._selector.get_map():
            if timeout > 0:
                time.sleep(timeout)
            return [], False

        chunks: list[Chunk] = []
        progressed = False
        for key, _ in self._selector.select(timeout):
            role, tag = key.data
            if role is _Role.OUTPUT:
                data = self._read(key.fd)
                if data is not None:
                    progressed = True
                    if data:
                        chunks.append((tag, data))
            elif role is _Role.STATUS:
                data = self._read(key.fd)
                if data is not None:
                    progressed = True
                    self._status.extend(data)
            elif role is _Role.INPUT:
                self._feeder.read_ready()
            elif role is _Role.STDIN:
                self._write_stdin()

        self._sync_input()
        return chunks, progressed

    def _read(self, fd: int) -> bytes | None:
        """Read one chunk; b"" on end-of-stream, None when nothing was available."""
        try:
            data = os.read(fd, self._chunk_size)
        except BlockingIOError:
            return None
        except OSError as exc:
            # PTY master reports EIO once the slave side is gone
            if exc.errno != errno.EIO:
                raise
            data = b""
        if not data:
            self._close_fd(fd)
        return data

    def _write_stdin(self) -> None:
        if self._stdin_fd is None or not self._feeder.pending:
            return
        try:
            written = os.write(self._stdin_fd, self._feeder.pending[: self._chunk_size])
        except BlockingIOError:
            return
        except (BrokenPipeError, ConnectionResetError):
            # child closed its stdin; the rest of the input has nowhere to go
            self._feeder.discard()
            self._close_stdin()
            return
        self._feeder.consume(written)

    def _sync_input(self) -> None:
        """Keep selector registrations in line with what the input side can do right now."""
        if self._closed:
            return

        if self._stdin_fd is not None:
            if self._feeder.exhausted:
                self._close_stdin()
            else:
                self._set_registered(self._stdin_fd, bool(self._feeder.pending), _Role.STDIN)

        stream_fd = self._feeder.stream_fd
        if stream_fd is not None:
            # refill only once the previous chunk went out
            wanted = not self._feeder.pending and self._stdin_fd is not None
            try:
                self._set_registered(stream_fd, wanted, _Role.INPUT)
            except (OSError, ValueError):
                # regular files can not be polled; they are read directly instead
                self._feeder.stream_fd = None
        elif self._stdin_fd is None:
            self._feeder.discard()

    def _set_registered(self, fd: int, wanted: bool, role: _Role) -> None:
        registered = fd in self._selector.get_map()
        if wanted and not registered:
            events = selectors.EVENT_WRITE if role is _Role.STDIN else selectors.EVENT_READ
            self._selector.register(fd, events, (role, None))
        elif not wanted and registered:
            self._selector.unregister(fd)

    def _close_stdin(self) -> None:
        if self._stdin_fd is None:
            return
        fd, self._stdin_fd = self._stdin_fd, None
        self._close_fd(fd)
        stream_fd = self._feeder.stream_fd
        if stream_fd is not None and stream_fd in self._selector.get_map():
            self._selector.unregister(stream_fd)
        self._feeder.discard()

    def _close_fd(self, fd: int) -> None:
        with contextlib.suppress(KeyError, ValueError):
            self._selector.unregister(fd)
        with contextlib.suppress(OSError):
            os.close(fd)


class FilePollingMultiplexer:
    """
    Fallback for platforms that can not select() on pipes.

    Output is captured to files and read incrementally each tick after a fixed sleep.
    """

    status_report = b""

    def __init__(self, files: Mapping[StreamTag, IO[bytes]], chunk_size: int = CHUNK_SIZE) -> None:
        self._files = dict(files)
        self._offsets = dict.fromkeys(self._files, 0)
        self._chunk_size = chunk_size
        self._done = False

    @property
    def is_done(self) -> bool:
        return self._done

    def poll(self, timeout: float) -> list[Chunk]:
        if timeout > 0:
            time.sleep(timeout)
        return self._read_new(self._chunk_size)

    def drain(self) -> list[Chunk]:
        chunks = self._read_new(-1)
        self._done = True
        return chunks

    def close(self) -> None:
        self._done = True
        for file in self._files.values():
            file.close()
        self._files.clear()

    def _read_new(self, size: int) -> list[Chunk]:
        chunks: list[Chunk] = []
        for tag, file in self._files.items():
            file.seek(self._offsets[tag])
            data = file.read(size)
            if data:
                self._offsets[tag] += len(data)
                chunks.append((tag, data))
        return chunks


def open_multiplexer(
    wiring: StdioWiring, input_source: InputSource | None, *, chunk_size: int = CHUNK_SIZE
) -> Multiplexer:
    """Take ownership of the parent-side endpoints of a spawned child."""
    if wiring.files:
        return FilePollingMultiplexer(wiring.files, chunk_size)
    return PipeMultiplexer(
        wiring.readers,
        stdin_fd=wiring.stdin_fd,
        input_source=input_source if wiring.stdin_fd is not None else None,
        status_fd=wiring.status_fd,
        chunk_size=chunk_size,
    )


def _fileno(stream: IO[Any]) -> int | None:
    try:
        return stream.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        return None


__all__ = [
    "CHUNK_SIZE",
    "FilePollingMultiplexer",
    "InputFeeder",
    "Multiplexer",
    "PipeMultiplexer",
    "open_multiplexer",
]
