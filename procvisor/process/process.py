"""
Supervisor for one external process.

- start(): wire stdio, spawn in its own session, non-blocking
- wait() / run() / must_run(): tick loop draining output and checking timeouts
- stop(): signal → grace period → KILL → reap
- restart(): fresh instance with identical configuration
"""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from types import TracebackType
from typing import IO, Any

from structlog.typing import FilteringBoundLogger

from procvisor.config import AppConfig, get_settings
from procvisor.logger import get_logger
from procvisor.process.errors import ProcessError
from procvisor.process.exit_codes import exit_code_text
from procvisor.process.output import OutputSink
from procvisor.process.pipes import Multiplexer, open_multiplexer
from procvisor.process.signals import (
    KILL_SIGNAL,
    STATUS_FD,
    SignalController,
    WaitStatus,
    parse_signal,
    redirect_status_fd,
    wrap_command,
)
from procvisor.process.timeouts import TimeoutPolicy, validate_timeout
from procvisor.process.tty import (
    StdioMode,
    StdioWiring,
    allocate_stdio,
    is_pty_supported,
    is_tty_supported,
)
from procvisor.process.types import InputSource, OutputCallback, Status, StreamTag

POSIX = os.name == "posix"

DEFAULT_STOP_SIGNAL = signal.SIGTERM

CALLBACK_WITH_DISABLED_OUTPUT = (
    "Output has been disabled, enable it to allow the use of a callback."
)


class Process:
    """
    One supervised child process.

    A string command line runs through the shell; a sequence of arguments is
    executed directly. Each instance spawns at most once; use restart() to run
    the same command again.
    """

    def __init__(
        self,
        command_line: str | Sequence[str],
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, Any] | None = None,
        input: Any = None,
        timeout: float | None = 60.0,
        options: Mapping[str, Any] | None = None,
        *,
        idle_timeout: float | None = None,
        tty: bool = False,
        pty: bool = False,
        config: AppConfig | None = None,
    ) -> None:
        self._config = config or get_settings()
        self._logger: FilteringBoundLogger = get_logger("procvisor.process")

        self._status = Status.READY
        self._output_disabled = False
        self._sink = OutputSink()
        self._signals = SignalController(
            exit_status_unreliable=self._config.exit_status_unreliable,
            logger=self._logger,
            compatibility_mode=self._config.compat.compatibility_mode,
        )

        self._popen: subprocess.Popen[bytes] | None = None
        self._mux: Multiplexer | None = None
        self._callback: OutputCallback | None = None
        self._start_time = 0.0
        self._last_activity = 0.0
        self._exited = False
        self._wait_status: WaitStatus | None = None
        self._exit_code: int | None = None
        # >0 while a tick runs; nested status updates from callbacks are skipped
        self._tick_depth = 0
        # stop() called again from a callback while stopping is a no-op
        self._stopping = False

        self.command_line = command_line
        self.cwd = cwd
        self.env = env
        self.input = input
        self.timeout = timeout
        self.idle_timeout = idle_timeout
        self.options = options
        self.tty = tty
        self.pty = pty

    def __repr__(self) -> str:
        return f"Process({self.command_string!r}, status={self._status.value!r})"

    def __enter__(self) -> Process:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

    # --- configuration ---------------------------------------------------------------------------

    @property
    def command_line(self) -> str | list[str]:
        return self._command_line

    @command_line.setter
    def command_line(self, value: str | Sequence[str]) -> None:
        if isinstance(value, str):
            if not value.strip():
                raise ProcessError.invalid_argument("The command line can not be empty.")
            self._command_line: str | list[str] = value
            return
        if isinstance(value, Sequence) and not isinstance(value, bytes):
            args = list(value)
            if args and all(isinstance(arg, str) for arg in args):
                self._command_line = args
                return
        raise ProcessError.invalid_argument(
            "The command line must be a non-empty string or a sequence of strings."
        )

    @property
    def command_string(self) -> str:
        """The command line as a single printable string."""
        if isinstance(self._command_line, str):
            return self._command_line
        if POSIX:
            return shlex.join(self._command_line)
        return subprocess.list2cmdline(self._command_line)

    @property
    def cwd(self) -> str | None:
        return self._cwd

    @cwd.setter
    def cwd(self, value: str | os.PathLike[str] | None) -> None:
        self._cwd = os.fspath(value) if value is not None else None

    @property
    def env(self) -> dict[str, str] | None:
        return self._env

    @env.setter
    def env(self, value: Mapping[str, Any] | None) -> None:
        if value is None:
            self._env: dict[str, str] | None = None
            return
        env: dict[str, str] = {}
        for key, item in value.items():
            if not isinstance(key, str) or isinstance(item, (Mapping, list, tuple, set)):
                raise ProcessError.invalid_argument(
                    f"Environment entries must map names to scalar values, got {key!r}."
                )
            env[key] = item if isinstance(item, str) else str(item)
        self._env = env

    @property
    def input(self) -> InputSource | None:
        return self._input

    @input.setter
    def input(self, value: Any) -> None:
        if self._status is Status.STARTED:
            raise ProcessError.logic("Input can not be set while the process is running.")
        self._input: InputSource | None = _normalize_input(value)

    @property
    def timeout(self) -> float | None:
        return self._timeout

    @timeout.setter
    def timeout(self, value: float | None) -> None:
        self._timeout = validate_timeout(value)

    @property
    def idle_timeout(self) -> float | None:
        return self._idle_timeout

    @idle_timeout.setter
    def idle_timeout(self, value: float | None) -> None:
        seconds = validate_timeout(value)
        if seconds is not None and self._output_disabled:
            raise ProcessError.logic("Idle timeout can not be set while the output is disabled.")
        self._idle_timeout = seconds

    @property
    def options(self) -> dict[str, Any]:
        return self._options

    @options.setter
    def options(self, value: Mapping[str, Any] | None) -> None:
        self._options: dict[str, Any] = dict(value) if value else {}

    @property
    def tty(self) -> bool:
        return self._tty

    @tty.setter
    def tty(self, value: bool) -> None:
        if value and not is_tty_supported():
            raise ProcessError.runtime("TTY mode is not supported on this platform.")
        self._tty = bool(value)

    @property
    def pty(self) -> bool:
        return self._pty

    @pty.setter
    def pty(self, value: bool) -> None:
        if value and not is_pty_supported():
            raise ProcessError.runtime("PTY mode is not supported on this platform.")
        self._pty = bool(value)

    @property
    def output_disabled(self) -> bool:
        return self._output_disabled

    def disable_output(self) -> None:
        if self.is_running():
            raise ProcessError.logic(
                "Disabling output while the process is running is not possible."
            )
        if self._idle_timeout is not None:
            raise ProcessError.logic("Output can not be disabled while an idle timeout is set.")
        self._output_disabled = True

    def enable_output(self) -> None:
        if self.is_running():
            raise ProcessError.logic(
                "Enabling output while the process is running is not possible."
            )
        self._output_disabled = False

    @property
    def compatibility_mode(self) -> bool:
        return self._signals.compatibility_mode

    def set_compatibility_mode(self, enabled: bool) -> None:
        """Report exit codes through the shell itself on hosts that auto-reap children."""
        self._signals.set_compatibility_mode(enabled)

    # --- lifecycle -------------------------------------------------------------------------------

    def start(self, callback: OutputCallback | None = None) -> None:
        """Spawn the child and return immediately."""
        if self._status is Status.STARTED:
            raise ProcessError.logic("Process is already running.")
        if self._status is Status.TERMINATED:
            raise ProcessError.logic("Process has already run; use restart() to run it again.")
        if self._output_disabled and callback is not None:
            raise ProcessError.logic(CALLBACK_WITH_DISABLED_OUTPUT)
        if self._cwd is not None and not Path(self._cwd).is_dir():
            raise ProcessError.runtime(
                f'The provided cwd "{self._cwd}" does not exist.', command_line=self.command_string
            )

        self._callback = callback
        wiring = allocate_stdio(
            self._stdio_mode(), self._input, status_pipe=self._signals.wraps_command
        )
        args, popen_kwargs = self._spawn_arguments(wiring)

        try:
            self._popen = subprocess.Popen(args, **popen_kwargs)
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            wiring.close()
            self._logger.error("proc.start_error", command=self.command_string, error=repr(exc))
            raise ProcessError.runtime(
                f"Unable to launch a new process: {exc}", command_line=self.command_string
            ) from exc

        wiring.close_child_ends()
        self._mux = open_multiplexer(wiring, self._input, chunk_size=self._config.poll.chunk_size)
        self._start_time = self._last_activity = time.monotonic()
        self._status = Status.STARTED

        self._logger.info(
            "proc.started",
            pid=self._popen.pid,
            command=self.command_string,
            cwd=self._cwd,
            mode=wiring.mode.value,
        )
        self._update_status()

    def wait(self, callback: OutputCallback | None = None) -> int | None:
        """Block until the child exited and its output is drained; return the exit code."""
        self._require_started("wait")
        if callback is not None:
            if self._output_disabled:
                raise ProcessError.logic(CALLBACK_WITH_DISABLED_OUTPUT)
            self._callback = callback

        tick = min(self._config.poll.tick_sec, self._config.timeouts.precision_sec)
        while self._status is Status.STARTED:
            self._tick(tick)
            self.check_timeout()

        status = self._wait_status
        if (
            status is not None
            and status.term_signal is not None
            and not self._signals.exit_status_unreliable
            and status.term_signal not in self._signals.sent_signals
        ):
            raise ProcessError.runtime(
                f"The process has been signaled with signal {status.term_signal}.",
                command_line=self.command_string,
            )
        return self._exit_code

    def run(self, callback: OutputCallback | None = None) -> int | None:
        """start() then wait(); the exit code is returned whatever its value."""
        self.start(callback)
        return self.wait()

    def must_run(self, callback: OutputCallback | None = None) -> Process:
        """run() and fail ProcessFailed on a nonzero exit code."""
        self._signals.require_reliable_exit_status()
        if self.run(callback) != 0:
            raise ProcessError.failed(self)
        return self

    def restart(self, callback: OutputCallback | None = None) -> Process:
        """Start a fresh instance with the same configuration; this one is left untouched."""
        if self.is_running():
            raise ProcessError.logic("Process is already running.")

        clone = Process(
            self._command_line,
            self._cwd,
            self._env,
            self._input,
            self._timeout,
            self._options,
            idle_timeout=self._idle_timeout,
            tty=self._tty,
            pty=self._pty,
            config=self._config,
        )
        clone._output_disabled = self._output_disabled
        clone.set_compatibility_mode(self.compatibility_mode)
        clone.start(callback)
        return clone

    def stop(self, timeout: float | None = None, signal: int | str | None = None) -> int | None:
        """
        Terminate the child: send `signal`, wait up to `timeout` seconds, then KILL.

        Callbacks keep firing while waiting; timeouts are not checked. No-op unless running.
        """
        if self._status is not Status.STARTED or self._stopping:
            return self._exit_code

        assert self._popen is not None
        self._stopping = True
        try:
            return self._stop(timeout, signal)
        finally:
            self._stopping = False

    def _stop(self, timeout: float | None, signal: int | str | None) -> int | None:
        assert self._popen is not None
        grace = self._config.timeouts.default_stop_grace_sec if timeout is None else timeout
        sig = DEFAULT_STOP_SIGNAL if signal is None else parse_signal(signal)
        tick = self._config.poll.tick_sec
        pid = self._popen.pid

        # 1) polite signal, then grace period
        if not self._exited:
            self._signals.send(self._popen, sig, tolerate_missing=True)
            self._logger.info("proc.terminate_sent", pid=pid, signal=sig, grace_sec=grace)

            deadline = time.monotonic() + grace
            while self._status is Status.STARTED and not self._exited:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._tick(min(tick, remaining))

        # 2) KILL whatever is left
        if self._status is Status.STARTED and not self._exited:
            self._signals.send(self._popen, KILL_SIGNAL, tolerate_missing=True)
            self._logger.warning("proc.killed", pid=pid, signal=int(KILL_SIGNAL))

        # 3) reap; leftover writers (detached grandchildren) do not block termination
        while self._status is Status.STARTED:
            self._tick(tick)
            if self._exited and self._status is Status.STARTED:
                self._finalize()

        return self._exit_code

    def signal(self, sig: int | str | signal.Signals) -> Process:
        """Deliver `sig` to the running child."""
        if not self.is_running():
            raise ProcessError.logic("Can not send signal on a non running process.")
        assert self._popen is not None
        self._signals.send(self._popen, parse_signal(sig), tolerate_missing=False)
        return self

    def check_timeout(self) -> None:
        """Stop the child and fail TimedOut once a deadline passed; public for custom loops."""
        if self._status is not Status.STARTED:
            return

        now = time.monotonic()
        policy = TimeoutPolicy(self._timeout, self._idle_timeout)
        exceeded = policy.check(now - self._start_time, now - self._last_activity)
        if exceeded is None:
            return

        self._logger.warning(
            "proc.timeout",
            pid=self._popen.pid if self._popen is not None else None,
            kind=exceeded.kind.value,
            timeout_sec=exceeded.seconds,
        )
        error = ProcessError.timed_out(self, exceeded)
        self.stop(0)
        raise error

    # --- state -----------------------------------------------------------------------------------

    @property
    def status(self) -> Status:
        self._update_status()
        return self._status

    @property
    def pid(self) -> int | None:
        """OS process id; None unless running."""
        self._update_status()
        if self._status is not Status.STARTED or self._popen is None:
            return None
        return self._popen.pid

    @property
    def exit_code(self) -> int | None:
        self._signals.require_reliable_exit_status()
        self._update_status()
        return self._exit_code

    @property
    def exit_code_text(self) -> str | None:
        return exit_code_text(self.exit_code)

    def is_running(self) -> bool:
        if self._status is not Status.STARTED:
            return False
        self._update_status()
        return self._status is Status.STARTED

    def is_started(self) -> bool:
        return self._status is not Status.READY

    def is_terminated(self) -> bool:
        self._update_status()
        return self._status is Status.TERMINATED

    def is_successful(self) -> bool:
        return self.is_terminated() and self.exit_code == 0

    def has_been_signaled(self) -> bool:
        self._require_terminated("has_been_signaled")
        self._signals.require_signal_info()
        return self._wait_status is not None and self._wait_status.signaled

    def get_term_signal(self) -> int | None:
        self._require_terminated("get_term_signal")
        self._signals.require_signal_info()
        return self._wait_status.term_signal if self._wait_status is not None else None

    def has_been_stopped(self) -> bool:
        self._require_terminated("has_been_stopped")
        self._signals.require_signal_info()
        return self._signals.stop_signal is not None

    def get_stop_signal(self) -> int | None:
        self._require_terminated("get_stop_signal")
        self._signals.require_signal_info()
        return self._signals.stop_signal

    # --- output ----------------------------------------------------------------------------------

    def get_output(self) -> bytes:
        self._require_output("get_output")
        self._update_status()
        return self._sink.read(StreamTag.OUT)

    def get_error_output(self) -> bytes:
        self._require_output("get_error_output")
        self._update_status()
        return self._sink.read(StreamTag.ERR)

    def get_incremental_output(self) -> bytes:
        self._require_output("get_incremental_output")
        self._update_status()
        return self._sink.read_incremental(StreamTag.OUT)

    def get_incremental_error_output(self) -> bytes:
        self._require_output("get_incremental_error_output")
        self._update_status()
        return self._sink.read_incremental(StreamTag.ERR)

    def clear_output(self) -> None:
        self._sink.clear(StreamTag.OUT)

    def clear_error_output(self) -> None:
        self._sink.clear(StreamTag.ERR)

    # --- internals -------------------------------------------------------------------------------

    def _stdio_mode(self) -> StdioMode:
        if self._tty:
            return StdioMode.TTY
        if self._pty:
            return StdioMode.PTY
        if self._output_disabled:
            return StdioMode.NULL
        return StdioMode.PIPES

    def _spawn_arguments(self, wiring: StdioWiring) -> tuple[str | list[str], dict[str, Any]]:
        """Popen arguments: caller options first, stdio and placement always ours."""
        kwargs = dict(self._options)
        bypass_shell = bool(kwargs.pop("bypass_shell", False))

        kwargs.update(
            stdin=wiring.stdin,
            stdout=wiring.stdout,
            stderr=wiring.stderr,
            cwd=self._cwd,
            env=self._env,
        )
        if POSIX:
            kwargs.setdefault("start_new_session", True)
        else:
            kwargs["creationflags"] = (
                kwargs.get("creationflags", 0) | subprocess.CREATE_NEW_PROCESS_GROUP
            )

        args: str | list[str]
        if isinstance(self._command_line, str):
            args = self._command_line
            kwargs["shell"] = POSIX or not bypass_shell
        else:
            args = list(self._command_line)
            kwargs["shell"] = False

        if self._signals.wraps_command:
            assert wiring.status_child_fd is not None
            args = wrap_command(self.command_string)
            kwargs["shell"] = True
            kwargs["preexec_fn"] = redirect_status_fd(wiring.status_child_fd)
            kwargs["pass_fds"] = (*kwargs.get("pass_fds", ()), STATUS_FD)

        return args, kwargs

    def _tick(self, timeout: float) -> None:
        """One round: drain ready streams, dispatch chunks, reap if exited."""
        assert self._mux is not None and self._popen is not None
        self._tick_depth += 1
        try:
            self._dispatch(self._mux.poll(timeout))
            # a callback may have stopped the process
            if self._status is not Status.STARTED:
                return

            if not self._exited:
                exited, status = self._signals.poll(self._popen)
                if not exited:
                    return
                self._exited = True
                self._wait_status = status

            self._dispatch(self._mux.drain())
            if self._status is Status.STARTED and self._mux.is_done:
                self._finalize()
        finally:
            self._tick_depth -= 1

    def _dispatch(self, chunks: list[tuple[StreamTag, bytes]]) -> None:
        for tag, data in chunks:
            self._last_activity = time.monotonic()
            if not self._output_disabled:
                self._sink.append(tag, data)
            if self._callback is not None:
                self._callback(tag, data)

    def _finalize(self) -> None:
        assert self._mux is not None and self._popen is not None
        report = self._mux.status_report
        self._mux.close()
        self._exit_code = self._signals.resolve_exit_code(self._wait_status, report)
        self._status = Status.TERMINATED

        term_signal = self._wait_status.term_signal if self._wait_status is not None else None
        self._logger.info(
            "proc.exit",
            pid=self._popen.pid,
            exit_code=self._exit_code,
            term_signal=term_signal,
            elapsed_sec=round(time.monotonic() - self._start_time, 3),
        )

    def _update_status(self) -> None:
        """Non-blocking progress for callers polling state instead of calling wait()."""
        if self._status is Status.STARTED and self._tick_depth == 0:
            self._tick(0)

    def _require_started(self, operation: str) -> None:
        if self._status is Status.READY:
            raise ProcessError.logic(f"Process must be started before calling {operation}.")

    def _require_terminated(self, operation: str) -> None:
        self._update_status()
        if self._status is not Status.TERMINATED:
            raise ProcessError.logic(f"Process must be terminated before calling {operation}.")

    def _require_output(self, operation: str) -> None:
        if self._output_disabled:
            raise ProcessError.logic("Output has been disabled.")
        self._require_started(operation)


def _normalize_input(value: Any) -> InputSource | None:
    """bytes-like, text and numbers become bytes; readable streams are kept as they are."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ProcessError.invalid_argument("Input can not be a boolean.")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode()
    if isinstance(value, (int, float)):
        return str(value).encode()
    if callable(getattr(value, "read", None)):
        stream: IO[Any] = value
        return stream
    raise ProcessError.invalid_argument(
        f"Input only accepts bytes, strings, numbers or readable streams, "
        f"got {type(value).__name__}."
    )


__all__ = ["Process"]
