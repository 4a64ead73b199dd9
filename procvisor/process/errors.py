"""
Error variants raised by the supervisor.

One exception type tagged with an ErrorKind; payload fields are set per kind.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

from procvisor.process.exit_codes import exit_code_text

if TYPE_CHECKING:
    from procvisor.process.process import Process
    from procvisor.process.timeouts import TimeoutExceeded, TimeoutKind


class ErrorKind(StrEnum):
    INVALID_ARGUMENT = "invalid_argument"
    LOGIC = "logic"
    RUNTIME = "runtime"
    TIMED_OUT = "timed_out"
    PROCESS_FAILED = "process_failed"


class ProcessError(Exception):
    """Raised synchronously by the call that detected the problem."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        command_line: str | None = None,
        timeout_kind: TimeoutKind | None = None,
        exceeded: float | None = None,
        output: bytes | None = None,
        error_output: bytes | None = None,
        exit_code: int | None = None,
        cwd: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.command_line = command_line
        self.timeout_kind = timeout_kind
        self.exceeded = exceeded
        self.output = output
        self.error_output = error_output
        self.exit_code = exit_code
        self.cwd = cwd

    @property
    def exit_code_text(self) -> str | None:
        return exit_code_text(self.exit_code)

    @property
    def is_general_timeout(self) -> bool:
        return self.kind is ErrorKind.TIMED_OUT and self.timeout_kind == "general"

    @property
    def is_idle_timeout(self) -> bool:
        return self.kind is ErrorKind.TIMED_OUT and self.timeout_kind == "idle"

    def __repr__(self) -> str:
        return f"ProcessError(kind={self.kind.value!r}, message={self.message!r})"

    # --- constructors per kind -------------------------------------------------------------------

    @classmethod
    def invalid_argument(cls, message: str) -> ProcessError:
        return cls(ErrorKind.INVALID_ARGUMENT, message)

    @classmethod
    def logic(cls, message: str) -> ProcessError:
        return cls(ErrorKind.LOGIC, message)

    @classmethod
    def runtime(cls, message: str, *, command_line: str | None = None) -> ProcessError:
        return cls(ErrorKind.RUNTIME, message, command_line=command_line)

    @classmethod
    def timed_out(cls, process: Process, exceeded: TimeoutExceeded) -> ProcessError:
        qualifier = "idle timeout" if exceeded.kind == "idle" else "timeout"
        return cls(
            ErrorKind.TIMED_OUT,
            f'The process "{process.command_string}" exceeded the {qualifier} '
            f"of {exceeded.seconds:g} seconds.",
            command_line=process.command_string,
            timeout_kind=exceeded.kind,
            exceeded=exceeded.seconds,
        )

    @classmethod
    def failed(cls, process: Process) -> ProcessError:
        exit_code = process.exit_code
        cwd = str(process.cwd) if process.cwd is not None else None
        message = (
            f'The command "{process.command_string}" failed.\n\n'
            f"Exit Code: {exit_code}({exit_code_text(exit_code)})\n\n"
            f"Working directory: {cwd if cwd is not None else '(inherited)'}"
        )

        output = error_output = None
        if not process.output_disabled:
            output = process.get_output()
            error_output = process.get_error_output()
            message += (
                "\n\nOutput:\n================\n"
                f"{output.decode(errors='replace')}"
                "\n\nError Output:\n================\n"
                f"{error_output.decode(errors='replace')}"
            )

        return cls(
            ErrorKind.PROCESS_FAILED,
            message,
            command_line=process.command_string,
            output=output,
            error_output=error_output,
            exit_code=exit_code,
            cwd=cwd,
        )


__all__ = ["ErrorKind", "ProcessError"]
