from __future__ import annotations

import os
import signal
from functools import cache
from pathlib import Path
from typing import ClassVar

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PollSettings(BaseModel):
    """Poll loop knobs."""

    # bounded wait of one tick on stream readiness
    tick_sec: float = Field(default=0.05, gt=0)
    # max bytes read from one stream per tick
    chunk_size: int = Field(default=8192, gt=0)


class TimeoutSettings(BaseModel):

    precision_sec: float = Field(default=0.2, gt=0)
    default_stop_grace_sec: float = Field(default=10.0, ge=0)


class CompatSettings(BaseModel):
    """
    Exit-status reporting quirks.

    exit_status_unreliable=None means "detect": the status is unreliable when
    SIGCHLD is ignored by the host, since children are then reaped by the kernel.
    """

    exit_status_unreliable: bool | None = Field(default=None)
    compatibility_mode: bool = Field(default=False)


class LoggingSettings(BaseModel):

    level: str = Field(default="WARNING")
    json_logs: bool = Field(default=False)


class AppConfig(BaseSettings):
    """
    Process-wide settings.

    Source of truth:
      1) YAML file (structured config)
      2) Flat PROCVISOR_* env overrides, merged explicitly in from_yaml().
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="",  # no automatic prefixing
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    poll: PollSettings = Field(default_factory=PollSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    compat: CompatSettings = Field(default_factory=CompatSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def exit_status_unreliable(self) -> bool:
        return bool(self.compat.exit_status_unreliable)

    # ---------- YAML loader with explicit env merge ----------
    @classmethod
    def from_yaml(cls, path: Path | None = None) -> AppConfig:
        """
        Load config from YAML, then overlay flat env overrides.
        Search order if path is not provided:
          $PROCVISOR_CONFIG
          ./procvisor.yaml
          ~/.config/procvisor/config.yaml
        """
        candidates: list[Path] = []
        if path is not None:
            candidates.append(path)
        else:
            env_path = _get_env("PROCVISOR_CONFIG")
            if env_path is not None:
                candidates.append(Path(env_path))
            candidates.extend(
                [Path("procvisor.yaml"), Path.home() / ".config" / "procvisor" / "config.yaml"]
            )

        raw: dict[str, object] = {}
        for p in candidates:
            if p.exists():
                text = p.read_text(encoding="utf-8")
                loaded = yaml.safe_load(text) or {}
                if not isinstance(loaded, dict):
                    raise ValueError(f"YAML at {p} must define a mapping at the root")
                raw = loaded
                break

        cfg = cls.model_validate(raw)

        level = _get_env("PROCVISOR_LOG_LEVEL")
        if level is not None:
            cfg.logging.level = level.strip().upper()

        json_logs = _get_env("PROCVISOR_LOG_JSON")
        if json_logs is not None:
            cfg.logging.json_logs = _truthy(json_logs)

        unreliable = _get_env("PROCVISOR_EXIT_STATUS_UNRELIABLE")
        if unreliable is not None:
            cfg.compat.exit_status_unreliable = _truthy(unreliable)

        compat_mode = _get_env("PROCVISOR_COMPATIBILITY_MODE")
        if compat_mode is not None:
            cfg.compat.compatibility_mode = _truthy(compat_mode)

        tick = _get_env("PROCVISOR_TICK_SEC")
        if tick is not None:
            cfg.poll = PollSettings(tick_sec=float(tick), chunk_size=cfg.poll.chunk_size)

        # resolved once here, never re-detected per process
        if cfg.compat.exit_status_unreliable is None:
            cfg.compat.exit_status_unreliable = detect_unreliable_exit_status()

        return cfg


def detect_unreliable_exit_status() -> bool:
    """True when children are auto-reaped and waitpid() can not report their status."""
    sigchld = getattr(signal, "SIGCHLD", None)
    if sigchld is None:
        return False
    return signal.getsignal(sigchld) == signal.SIG_IGN


def _get_env(*names: str) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v != "":
            return v
    return None


def _truthy(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@cache
def get_settings() -> AppConfig:
    # Read from YAML by default; callers can still pass a path to from_yaml() directly if needed.
    return AppConfig.from_yaml()


__all__ = [
    "AppConfig",
    "CompatSettings",
    "LoggingSettings",
    "PollSettings",
    "TimeoutSettings",
    "detect_unreliable_exit_status",
    "get_settings",
]
