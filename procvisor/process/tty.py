"""
Stdio wiring for the child process.

- allocate_stdio(): pipes, a pseudo-terminal, the controlling terminal or null streams
- is_tty_supported() / is_pty_supported(): cached capability probes
"""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from enum import StrEnum
from functools import cache
from typing import IO, Any

from procvisor.process.errors import ProcessError
from procvisor.process.types import InputSource, StreamTag

POSIX = os.name == "posix"


class StdioMode(StrEnum):
    PIPES = "pipes"
    PTY = "pty"
    TTY = "tty"
    # output disabled: stdout/stderr go to the null device
    NULL = "null"


@dataclass(slots=True)
class StdioWiring:
    """Spawn arguments plus the parent-side endpoints they pair with."""

    mode: StdioMode
    # arguments for subprocess.Popen
    stdin: int | IO[Any] | None = subprocess.DEVNULL
    stdout: int | IO[Any] | None = subprocess.DEVNULL
    stderr: int | IO[Any] | None = subprocess.DEVNULL
    # parent-side read ends
    readers: dict[int, StreamTag] = field(default_factory=dict)
    # parent-side write end of the child's stdin
    stdin_fd: int | None = None
    # compatibility-mode exit code pipe
    status_fd: int | None = None
    status_child_fd: int | None = None
    # capture files used where pipes can not be multiplexed
    files: dict[StreamTag, IO[bytes]] = field(default_factory=dict)
    # descriptors only the child needs; closed in the parent after spawn
    child_fds: list[int] = field(default_factory=list)
    # staged input file, closed after spawn
    child_files: list[IO[bytes]] = field(default_factory=list)

    def close_child_ends(self) -> None:
        for fd in self.child_fds:
            with contextlib.suppress(OSError):
                os.close(fd)
        self.child_fds.clear()
        for file in self.child_files:
            file.close()
        self.child_files.clear()

    def close(self) -> None:
        """Release everything; used when the spawn itself failed."""
        self.close_child_ends()
        parent_fds = [*self.readers, self.stdin_fd, self.status_fd]
        for fd in parent_fds:
            if fd is not None:
                with contextlib.suppress(OSError):
                    os.close(fd)
        self.readers.clear()
        self.stdin_fd = self.status_fd = None
        for file in self.files.values():
            file.close()
        self.files.clear()


def allocate_stdio(
    mode: StdioMode, input_source: InputSource | None, *, status_pipe: bool = False
) -> StdioWiring:
    """Create the descriptors for one spawn in the given mode."""
    if mode is StdioMode.TTY:
        return _allocate_tty()

    wiring = StdioWiring(mode=mode)
    try:
        if mode is StdioMode.PTY:
            _wire_pty(wiring, input_source)
        else:
            _wire_stdin(wiring, input_source)
            if mode is StdioMode.PIPES:
                _wire_output(wiring)
        if status_pipe:
            wiring.status_fd, wiring.status_child_fd = os.pipe()
            wiring.child_fds.append(wiring.status_child_fd)
    except BaseException:
        wiring.close()
        raise
    return wiring


def _allocate_tty() -> StdioWiring:
    if not is_tty_supported():
        raise ProcessError.runtime("TTY mode is not supported on this platform.")
    fd = os.open("/dev/tty", os.O_RDWR)
    return StdioWiring(mode=StdioMode.TTY, stdin=fd, stdout=fd, stderr=fd, child_fds=[fd])


def _wire_pty(wiring: StdioWiring, input_source: InputSource | None) -> None:
    import pty

    master_fd, slave_fd = pty.openpty()
    wiring.child_fds.append(slave_fd)
    wiring.stdin = wiring.stdout = wiring.stderr = slave_fd
    # master stands in for both output streams
    wiring.readers[master_fd] = StreamTag.OUT
    if input_source is not None:
        # separate descriptor so the selector can watch read and write independently
        wiring.stdin_fd = os.dup(master_fd)


def _wire_stdin(wiring: StdioWiring, input_source: InputSource | None) -> None:
    if input_source is None:
        wiring.stdin = subprocess.DEVNULL
        return

    if POSIX:
        read_fd, write_fd = os.pipe()
        wiring.child_fds.append(read_fd)
        wiring.stdin = read_fd
        wiring.stdin_fd = write_fd
        return

    # no non-blocking pipe writes here: stage the input in a file
    staged = tempfile.TemporaryFile()
    if isinstance(input_source, bytes):
        staged.write(input_source)
    else:
        shutil.copyfileobj(_BinaryReader(input_source), staged)
    staged.seek(0)
    wiring.child_files.append(staged)
    wiring.stdin = staged


def _wire_output(wiring: StdioWiring) -> None:
    if POSIX:
        out_read, out_write = os.pipe()
        err_read, err_write = os.pipe()
        wiring.readers.update({out_read: StreamTag.OUT, err_read: StreamTag.ERR})
        wiring.child_fds.extend([out_write, err_write])
        wiring.stdout = out_write
        wiring.stderr = err_write
        return

    for tag in StreamTag:
        wiring.files[tag] = tempfile.TemporaryFile()
    wiring.stdout = wiring.files[StreamTag.OUT]
    wiring.stderr = wiring.files[StreamTag.ERR]


class _BinaryReader:
    """Adapts a text or binary stream to the bytes interface copyfileobj expects."""

    def __init__(self, stream: IO[Any]) -> None:
        self._stream = stream

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        return data.encode() if isinstance(data, str) else data


@cache
def is_tty_supported() -> bool:
    """True when the host has a controlling terminal the child can be attached to."""
    if not POSIX:
        return False
    try:
        fd = os.open("/dev/tty", os.O_RDWR)
    except OSError:
        return False
    os.close(fd)
    return True


@cache
def is_pty_supported() -> bool:
    """True when pseudo-terminals can be allocated."""
    if not POSIX:
        return False
    try:
        import pty

        master_fd, slave_fd = pty.openpty()
    except (ImportError, OSError):
        return False
    os.close(master_fd)
    os.close(slave_fd)
    return True


__all__ = [
    "StdioMode",
    "StdioWiring",
    "allocate_stdio",
    "is_pty_supported",
    "is_tty_supported",
]
