"""
procvisor: run an external process, stream its output, enforce timeouts.
"""

from __future__ import annotations

from .config import AppConfig, get_settings
from .logger import configure_logging, get_logger
from .process import ErrorKind, Process, ProcessError, Status, StreamTag


__all__ = [
    "AppConfig",
    "ErrorKind",
    "Process",
    "ProcessError",
    "Status",
    "StreamTag",
    "configure_logging",
    "get_logger",
    "get_settings",
]
