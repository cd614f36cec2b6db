"""Runtime settings loaded from environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


@dataclass(frozen=True)
class Settings:
    storage_root: Path = Path(".agent-teams")
    poll_interval_seconds: float = 0.5
    poll_timeout_seconds: float = 30.0
    heartbeat_timeout_seconds: int = 60
    max_consecutive_misses: int = 2
    max_dispatch_depth: int = 3
    dispatch_log_max: int = 500
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            storage_root=Path(os.getenv("AGENT_TEAMS_ROOT", ".agent-teams")).expanduser(),
            poll_interval_seconds=_env_float("AGENT_TEAMS_POLL_INTERVAL", 0.5),
            poll_timeout_seconds=_env_float("AGENT_TEAMS_POLL_TIMEOUT", 30.0),
            heartbeat_timeout_seconds=_env_int("AGENT_TEAMS_HEARTBEAT_TIMEOUT", 60),
            max_consecutive_misses=max(1, _env_int("AGENT_TEAMS_MAX_MISSES", 2)),
            max_dispatch_depth=max(1, _env_int("AGENT_TEAMS_DISPATCH_DEPTH", 3)),
            dispatch_log_max=max(1, _env_int("AGENT_TEAMS_DISPATCH_LOG_MAX", 500)),
            log_level=os.getenv("AGENT_TEAMS_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        )
