"""
Public API for the process supervisor.
"""

from __future__ import annotations

from .errors import ErrorKind, ProcessError
from .exit_codes import EXIT_CODES, exit_code_text
from .process import Process
from .timeouts import TimeoutExceeded, TimeoutKind
from .tty import is_pty_supported, is_tty_supported
from .types import OutputCallback, Status, StreamTag


__all__ = [
    "EXIT_CODES",
    "ErrorKind",
    "OutputCallback",
    "Process",
    "ProcessError",
    "Status",
    "StreamTag",
    "TimeoutExceeded",
    "TimeoutKind",
    "exit_code_text",
    "is_pty_supported",
    "is_tty_supported",
]
