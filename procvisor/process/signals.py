"""
Signal delivery and exit-status interpretation.

- parse_signal(): validate a signal given as int, Signals member or name
- WaitStatus: decoded wait() status (exit code or terminating signal)
- SignalController: per-process signal bookkeeping, non-blocking reap and
  the exit-status compatibility mode for hosts that auto-reap children
"""

from __future__ import annotations

import os
import signal
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field

from structlog.typing import FilteringBoundLogger

from procvisor.process.errors import ProcessError

POSIX = os.name == "posix"

# descriptor the wrapped shell command writes its own exit code to
STATUS_FD = 3

KILL_SIGNAL: signal.Signals = getattr(signal, "SIGKILL", signal.SIGTERM)


def parse_signal(sig: int | str | signal.Signals) -> int:
    """Return the signal number for `sig` or fail Runtime when the host does not know it."""
    if isinstance(sig, bool):
        raise ProcessError.runtime(f"Error while sending signal `{sig!r}`.")

    number: int | None = None
    if isinstance(sig, int):
        number = int(sig)
    elif isinstance(sig, str):
        name = sig.strip().upper()
        if not name.startswith("SIG"):
            name = f"SIG{name}"
        found = getattr(signal.Signals, name, None) if name.isidentifier() else None
        number = int(found) if found is not None else None

    if number is None or number not in signal.valid_signals():
        raise ProcessError.runtime(f"Error while sending signal `{sig}`.")
    return number


@dataclass(slots=True, frozen=True)
class WaitStatus:
    """Exit code when the child exited, terminating signal when it was killed."""

    exit_code: int | None = None
    term_signal: int | None = None

    @property
    def signaled(self) -> bool:
        return self.term_signal is not None

    @classmethod
    def from_raw(cls, status: int) -> WaitStatus:
        if os.WIFSIGNALED(status):
            return cls(term_signal=os.WTERMSIG(status))
        return cls(exit_code=os.waitstatus_to_exitcode(status))

    @classmethod
    def from_returncode(cls, returncode: int) -> WaitStatus:
        """Popen convention: negative return codes mean killed by that signal."""
        if returncode < 0:
            return cls(term_signal=-returncode)
        return cls(exit_code=returncode)


def wrap_command(command: str) -> str:
    """Make a shell command report its own exit code on STATUS_FD."""
    return (
        f"({command}) {STATUS_FD}>/dev/null; code=$?; "
        f"echo $code >&{STATUS_FD}; exit $code"
    )


def redirect_status_fd(fd: int) -> Callable[[], None]:
    """preexec_fn moving the status pipe to STATUS_FD in the child."""

    def _redirect() -> None:
        os.dup2(fd, STATUS_FD)

    return _redirect


@dataclass(slots=True)
class SignalController:
    """Signal bookkeeping for one child."""

    exit_status_unreliable: bool
    logger: FilteringBoundLogger
    compatibility_mode: bool = False

    sent_signals: list[int] = field(default_factory=list)
    stop_signal: int | None = None

    @property
    def latest_signal(self) -> int | None:
        return self.sent_signals[-1] if self.sent_signals else None

    @property
    def wraps_command(self) -> bool:
        """True when shell commands get wrapped to report their exit code themselves."""
        return POSIX and self.exit_status_unreliable and self.compatibility_mode

    def set_compatibility_mode(self, enabled: bool) -> None:
        self.compatibility_mode = enabled

    def require_reliable_exit_status(self) -> None:
        if self.exit_status_unreliable and not self.compatibility_mode:
            raise ProcessError.runtime(
                "Child exit statuses are not reported reliably on this host. "
                "Call set_compatibility_mode(True) to use this method."
            )

    def require_signal_info(self) -> None:
        if self.exit_status_unreliable:
            raise ProcessError.runtime(
                "Child exit statuses are not reported reliably on this host. "
                "Signal information can not be retrieved."
            )

    # --- delivery --------------------------------------------------------------------------------

    def send(self, popen: subprocess.Popen[bytes], sig: int, *, tolerate_missing: bool) -> bool:
        """
        Deliver `sig` to the child, or its whole process group when it leads one.

        Returns False when the child was already gone and `tolerate_missing` is set.
        """
        pid = popen.pid

        if not POSIX:
            if sig not in (signal.SIGTERM, KILL_SIGNAL):
                raise ProcessError.runtime(f"Signal {sig} is not supported on this platform.")
            try:
                popen.terminate()
            except OSError as exc:
                if tolerate_missing:
                    return False
                raise ProcessError.runtime(f"Error while sending signal `{sig}`.") from exc
            self._record_sent(pid, sig, group=False)
            return True

        try:
            group = os.getpgid(pid) == pid
        except ProcessLookupError:
            group = False

        try:
            if group:
                os.killpg(pid, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError as exc:
            if tolerate_missing:
                return False
            self.logger.warning("proc.signal_error", pid=pid, signal=sig, error=repr(exc))
            raise ProcessError.runtime(
                f"Error while sending signal `{sig}`: the process is not running."
            ) from exc
        except OSError as exc:
            self.logger.warning("proc.signal_error", pid=pid, signal=sig, error=repr(exc))
            raise ProcessError.runtime(f"Error while sending signal `{sig}`.") from exc

        self._record_sent(pid, sig, group=group)
        return True

    def _record_sent(self, pid: int, sig: int, *, group: bool) -> None:
        self.sent_signals.append(sig)
        self.logger.debug("proc.signal_sent", pid=pid, signal=sig, group=group)

    # --- reaping ---------------------------------------------------------------------------------

    def poll(self, popen: subprocess.Popen[bytes]) -> tuple[bool, WaitStatus | None]:
        """
        Non-blocking reap.

        Returns (exited, status); status is None when the child was reaped
        elsewhere and its exit status is lost.
        """
        if popen.returncode is not None:
            return True, WaitStatus.from_returncode(popen.returncode)

        if not POSIX:
            returncode = popen.poll()
            if returncode is None:
                return False, None
            return True, WaitStatus.from_returncode(returncode)

        try:
            pid, raw = os.waitpid(popen.pid, os.WNOHANG | os.WUNTRACED)
        except ChildProcessError:
            # auto-reaped (SIGCHLD ignored) or reaped by someone else
            popen.returncode = 0
            return True, None

        if pid == 0:
            return False, None
        if os.WIFSTOPPED(raw):
            self.stop_signal = os.WSTOPSIG(raw)
            return False, None

        status = WaitStatus.from_raw(raw)
        popen.returncode = (
            -status.term_signal if status.term_signal is not None else status.exit_code
        )
        return True, status

    def resolve_exit_code(self, status: WaitStatus | None, report: bytes) -> int | None:
        """
        Exit code to publish once the child is reaped.

        A child killed by signal N reports 128 + N.
        """
        if self.wraps_command:
            text = report.strip()
            if text:
                try:
                    return int(text.split()[-1])
                except ValueError:
                    pass
            if self.latest_signal is not None:
                return 128 + self.latest_signal
            return None

        if self.exit_status_unreliable or status is None:
            return None
        if status.term_signal is not None:
            return 128 + status.term_signal
        return status.exit_code


__all__ = [
    "KILL_SIGNAL",
    "STATUS_FD",
    "SignalController",
    "WaitStatus",
    "parse_signal",
    "redirect_status_fd",
    "wrap_command",
]
