"""Configuration helpers for environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Timing:
    """Kick policy constants. Not individually configurable."""

    kick_threshold_s: float
    sweep_interval_s: float
    step_delay_s: float = 10.0
    max_tries: int = 3


# 10 minutes + 5 seconds; sweep at roughly half that so a modem overshoots by at most one sweep
DEFAULT_TIMING = Timing(kick_threshold_s=605.0, sweep_interval_s=300.0)
DEBUG_TIMING = Timing(kick_threshold_s=60.0, sweep_interval_s=15.0)


@dataclass(frozen=True)
class Config:
    # All fields are passed explicitly by Config.load(), so we don’t put per-field defaults here.
    debug: bool
    log_level: str

    health_enabled: bool
    health_host: str
    health_port: int

    @property
    def timing(self) -> Timing:
        return DEBUG_TIMING if self.debug else DEFAULT_TIMING

    @staticmethod
    def load() -> "Config":
        """Build a Config from environment (systemd unit / compose env)."""
        debug     = _getenv_bool("MODEM_KICK_DEBUG", False)
        log_level = (os.getenv("MODEM_KICK_LOG_LEVEL") or "INFO").strip().upper()

        health_enabled = _getenv_bool("HEALTH_ENABLED", True)
        health_host    = os.getenv("HEALTH_HOST", "127.0.0.1")
        try:
            health_port = int(os.getenv("HEALTH_PORT", "9124"))
        except ValueError:
            health_port = 9124

        return Config(
            debug=debug,
            log_level=log_level,
            health_enabled=health_enabled,
            health_host=health_host,
            health_port=health_port,
        )
