"""Server settings read from the environment.

Command-line flags in ``party_server.__main__`` use these values as their
defaults, so either source can configure a deployment.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from party_shared.protocol import DEFAULT_HEALTH_PORT, DEFAULT_TCP_PORT

from .connections import HEARTBEAT_TIMEOUT
from .lifecycle import DEFAULT_EMPTY_ROOM_TTL

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(slots=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_TCP_PORT
    health_host: str = "0.0.0.0"
    health_port: int = DEFAULT_HEALTH_PORT
    empty_room_ttl_ms: int = int(DEFAULT_EMPTY_ROOM_TTL * 1000)
    allowed_origins: list[str] = field(default_factory=list)
    allow_host_claim: bool = True
    heartbeat_timeout: float = HEARTBEAT_TIMEOUT
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_max_bytes: int = 5 * 1024 * 1024
    log_backup_count: int = 5

    @property
    def empty_room_ttl_seconds(self) -> float:
        return self.empty_room_ttl_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        log_file = env.get("LOG_FILE")
        return cls(
            host=env.get("HOST", defaults.host),
            port=_int(env, "PORT", defaults.port),
            health_host=env.get("HEALTH_HOST", defaults.health_host),
            health_port=_int(env, "HEALTH_PORT", defaults.health_port),
            empty_room_ttl_ms=_int(env, "EMPTY_ROOM_TTL_MS", defaults.empty_room_ttl_ms),
            allowed_origins=parse_origins(env.get("CORS_ORIGINS", "")),
            allow_host_claim=_bool(env, "ENABLE_HOST_CLAIM", defaults.allow_host_claim),
            heartbeat_timeout=_float(env, "HEARTBEAT_TIMEOUT", defaults.heartbeat_timeout),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
            log_file=Path(log_file) if log_file else None,
        )


def parse_origins(raw: str) -> list[str]:
    """Split a comma separated origin list, dropping blanks."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {raw!r}")
