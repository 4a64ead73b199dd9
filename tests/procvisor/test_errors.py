from __future__ import annotations

from types import SimpleNamespace

from procvisor.process.errors import ErrorKind, ProcessError
from procvisor.process.timeouts import TimeoutExceeded, TimeoutKind


def _finished(*, output_disabled: bool = False, exit_code: int = 127) -> SimpleNamespace:
    return SimpleNamespace(
        command_string="missing-tool --flag",
        exit_code=exit_code,
        cwd="/srv/app",
        output_disabled=output_disabled,
        get_output=lambda: b"partial",
        get_error_output=lambda: b"sh: missing-tool: not found",
    )


def test_timed_out_payload() -> None:
    error = ProcessError.timed_out(
        _finished(),  # type: ignore[arg-type]
        TimeoutExceeded(TimeoutKind.IDLE, 1.5),
    )
    assert error.kind is ErrorKind.TIMED_OUT
    assert error.is_idle_timeout
    assert not error.is_general_timeout
    assert error.exceeded == 1.5
    assert error.command_line == "missing-tool --flag"
    assert str(error) == (
        'The process "missing-tool --flag" exceeded the idle timeout of 1.5 seconds.'
    )


def test_failed_payload() -> None:
    error = ProcessError.failed(_finished())  # type: ignore[arg-type]
    assert error.kind is ErrorKind.PROCESS_FAILED
    assert error.exit_code == 127
    assert error.exit_code_text == "Command not found"
    assert error.output == b"partial"
    assert error.error_output == b"sh: missing-tool: not found"
    assert error.cwd == "/srv/app"

    message = str(error)
    assert message.startswith('The command "missing-tool --flag" failed.')
    assert "Exit Code: 127(Command not found)" in message
    assert "Working directory: /srv/app" in message
    assert "sh: missing-tool: not found" in message


def test_failed_without_output() -> None:
    error = ProcessError.failed(_finished(output_disabled=True))  # type: ignore[arg-type]
    assert error.output is None
    assert error.error_output is None
    assert "Output:" not in str(error)


def test_simple_kinds() -> None:
    assert ProcessError.invalid_argument("bad").kind is ErrorKind.INVALID_ARGUMENT
    assert ProcessError.logic("order").kind is ErrorKind.LOGIC
    runtime = ProcessError.runtime("boom", command_line="ls")
    assert runtime.kind is ErrorKind.RUNTIME
    assert runtime.command_line == "ls"
    assert runtime.exit_code_text is None
    assert not runtime.is_general_timeout
