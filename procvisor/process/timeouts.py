from __future__ import annotations

import math
from dataclasses import dataclass
from enum import StrEnum

from procvisor.process.errors import ProcessError


class TimeoutKind(StrEnum):
    GENERAL = "general"
    IDLE = "idle"


@dataclass(slots=True, frozen=True)
class TimeoutExceeded:
    """Which deadline fired and its configured duration."""

    kind: TimeoutKind
    seconds: float


def validate_timeout(value: float | None) -> float | None:
    """
    Normalize a timeout value.

    None and 0 disable the timeout; negative values are rejected.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ProcessError.invalid_argument("The timeout value must be a number, got a boolean.")
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ProcessError.invalid_argument(
            f"The timeout value must be a number, got {value!r}."
        ) from exc

    if math.isnan(seconds) or seconds < 0:
        raise ProcessError.invalid_argument("The timeout value must be a valid positive number.")
    if seconds == 0:
        return None
    return seconds


@dataclass(slots=True, frozen=True)
class TimeoutPolicy:
    """Overall and idle deadlines; the caller owns the clocks."""

    timeout: float | None = None
    idle_timeout: float | None = None

    def check(self, elapsed: float, idle_elapsed: float) -> TimeoutExceeded | None:
        """
        Evaluate both deadlines.

        :param elapsed: seconds since the process started
        :param idle_elapsed: seconds since the last byte was observed on any stream
        """
        # general deadline always wins, even if idle would also have fired
        if self.timeout is not None and elapsed >= self.timeout:
            return TimeoutExceeded(TimeoutKind.GENERAL, self.timeout)
        if self.idle_timeout is not None and idle_elapsed >= self.idle_timeout:
            return TimeoutExceeded(TimeoutKind.IDLE, self.idle_timeout)
        return None


__all__ = ["TimeoutExceeded", "TimeoutKind", "TimeoutPolicy", "validate_timeout"]
