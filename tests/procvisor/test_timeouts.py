from __future__ import annotations

import math

import pytest

from procvisor.process.errors import ErrorKind, ProcessError
from procvisor.process.timeouts import (
    TimeoutExceeded,
    TimeoutKind,
    TimeoutPolicy,
    validate_timeout,
)


# ---- 1) Validation ----
@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, None),
        (0, None),
        (0.0, None),
        (1, 1.0),
        (2.5, 2.5),
        ("3", 3.0),
    ],
)
def test_validate_timeout_normalizes(value: object, expected: float | None) -> None:
    assert validate_timeout(value) == expected  # type: ignore[arg-type]


@pytest.mark.parametrize("value", [-1, -0.001, math.nan, True, "soon", object()])
def test_validate_timeout_rejects(value: object) -> None:
    with pytest.raises(ProcessError) as ei:
        validate_timeout(value)  # type: ignore[arg-type]
    assert ei.value.kind is ErrorKind.INVALID_ARGUMENT


# ---- 2) Policy ----
def test_no_deadlines_never_fire() -> None:
    assert TimeoutPolicy().check(10_000.0, 10_000.0) is None


def test_general_deadline_fires() -> None:
    policy = TimeoutPolicy(timeout=1.0)
    assert policy.check(0.99, 0.99) is None
    assert policy.check(1.0, 0.0) == TimeoutExceeded(TimeoutKind.GENERAL, 1.0)


def test_idle_deadline_fires() -> None:
    policy = TimeoutPolicy(timeout=10.0, idle_timeout=0.5)
    assert policy.check(3.0, 0.4) is None
    assert policy.check(3.0, 0.5) == TimeoutExceeded(TimeoutKind.IDLE, 0.5)


def test_general_wins_when_both_fire() -> None:
    policy = TimeoutPolicy(timeout=1.0, idle_timeout=0.5)
    exceeded = policy.check(1.0, 1.0)
    assert exceeded is not None
    assert exceeded.kind is TimeoutKind.GENERAL
    assert exceeded.seconds == 1.0
