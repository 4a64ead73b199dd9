from __future__ import annotations

import os
import subprocess

import pytest

from procvisor.process import tty
from procvisor.process.errors import ErrorKind, ProcessError
from procvisor.process.tty import StdioMode, allocate_stdio, is_pty_supported
from procvisor.process.types import StreamTag

posix_only = pytest.mark.skipif(os.name != "posix", reason="POSIX descriptors only")


@posix_only
def test_pipes_without_input() -> None:
    wiring = allocate_stdio(StdioMode.PIPES, None)
    try:
        assert sorted(wiring.readers.values()) == [StreamTag.ERR, StreamTag.OUT]
        assert wiring.stdin == subprocess.DEVNULL
        assert wiring.stdin_fd is None
        assert wiring.status_fd is None
        # child ends: stdout and stderr write sides
        assert len(wiring.child_fds) == 2
        assert {wiring.stdout, wiring.stderr} == set(wiring.child_fds)
    finally:
        wiring.close()
    assert wiring.readers == {}
    assert wiring.child_fds == []


@posix_only
def test_pipes_with_input_and_status_pipe() -> None:
    wiring = allocate_stdio(StdioMode.PIPES, b"data", status_pipe=True)
    try:
        assert wiring.stdin_fd is not None
        assert wiring.stdin in wiring.child_fds
        assert wiring.status_fd is not None
        assert wiring.status_child_fd in wiring.child_fds
    finally:
        wiring.close()


@posix_only
def test_close_child_ends_keeps_parent_side() -> None:
    wiring = allocate_stdio(StdioMode.PIPES, None)
    try:
        child_fds = list(wiring.child_fds)
        wiring.close_child_ends()
        assert wiring.child_fds == []
        for fd in child_fds:
            with pytest.raises(OSError):
                os.fstat(fd)
        for fd in wiring.readers:
            os.fstat(fd)
    finally:
        wiring.close()


def test_null_mode_discards_output() -> None:
    wiring = allocate_stdio(StdioMode.NULL, None)
    assert wiring.stdout == subprocess.DEVNULL
    assert wiring.stderr == subprocess.DEVNULL
    assert wiring.readers == {}
    wiring.close()


@pytest.mark.skipif(not is_pty_supported(), reason="no pseudo-terminals")
def test_pty_master_stands_in_for_both_streams() -> None:
    wiring = allocate_stdio(StdioMode.PTY, b"in")
    try:
        assert list(wiring.readers.values()) == [StreamTag.OUT]
        (master,) = wiring.readers
        assert wiring.stdin_fd is not None and wiring.stdin_fd != master
        assert wiring.stdin == wiring.stdout == wiring.stderr
    finally:
        wiring.close()


def test_tty_unsupported(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(tty, "is_tty_supported", lambda: False)
    with pytest.raises(ProcessError) as ei:
        allocate_stdio(StdioMode.TTY, None)
    assert ei.value.kind is ErrorKind.RUNTIME
    assert "TTY mode is not supported" in str(ei.value)
