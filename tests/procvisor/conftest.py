from __future__ import annotations

import pytest

from procvisor.config import AppConfig, CompatSettings, PollSettings


@pytest.fixture
def config() -> AppConfig:
    """Settings with a reliable exit status and a short tick, independent of the host."""
    return AppConfig(
        poll=PollSettings(tick_sec=0.01),
        compat=CompatSettings(exit_status_unreliable=False),
    )


@pytest.fixture
def unreliable_config() -> AppConfig:
    """Settings simulating a host that auto-reaps children."""
    return AppConfig(
        poll=PollSettings(tick_sec=0.01),
        compat=CompatSettings(exit_status_unreliable=True),
    )
