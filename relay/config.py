"""
Relay configuration from environment variables
"""
import os
from dataclasses import dataclass
from typing import Mapping, Optional

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
SYNC_ENGINES = ("yjs", "broadcast")


@dataclass
class RelayConfig:
    """Process-level settings for the relay"""
    port: int = 3001
    host: str = "0.0.0.0"
    max_connections: int = 1000
    shutdown_grace_seconds: float = 10.0
    default_room: str = "default"
    public_ws_url: Optional[str] = None
    sync_engine: str = "yjs"
    sync_compaction: bool = True
    sync_history_limit: int = 500
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        env = os.environ if environ is None else environ
        defaults = cls()

        config = cls(
            port=_int(env, "PORT", defaults.port),
            host=env.get("SERVER_HOST", defaults.host),
            max_connections=_int(env, "MAX_CONNECTIONS", defaults.max_connections),
            shutdown_grace_seconds=_float(env, "SHUTDOWN_GRACE_SECONDS", defaults.shutdown_grace_seconds),
            default_room=env.get("DEFAULT_ROOM") or defaults.default_room,
            public_ws_url=env.get("PUBLIC_WS_URL") or None,
            sync_engine=env.get("SYNC_ENGINE", defaults.sync_engine).strip().lower(),
            sync_compaction=_bool(env, "SYNC_COMPACTION", defaults.sync_compaction),
            sync_history_limit=_int(env, "SYNC_HISTORY_LIMIT", defaults.sync_history_limit),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"PORT must be between 1 and 65535, got {self.port}")
        if self.max_connections < 1:
            raise ValueError(f"MAX_CONNECTIONS must be >= 1, got {self.max_connections}")
        if self.shutdown_grace_seconds < 0:
            raise ValueError(
                f"SHUTDOWN_GRACE_SECONDS must be >= 0, got {self.shutdown_grace_seconds}"
            )
        if self.sync_engine not in SYNC_ENGINES:
            raise ValueError(
                f"SYNC_ENGINE must be one of {', '.join(SYNC_ENGINES)}, got {self.sync_engine!r}"
            )
        if self.sync_history_limit < 0:
            raise ValueError(f"SYNC_HISTORY_LIMIT must be >= 0, got {self.sync_history_limit}")


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")
