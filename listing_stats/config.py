from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError

ROOT = Path(__file__).resolve().parents[1]
BACKENDS = ("memory", "sqlite", "redis")


def _int_env(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass
class QueueSettings:
    """Settings for the impression/click write-behind queue."""

    db_path: str = str(ROOT / "app.sqlite")
    backend: str = "sqlite"
    redis_url: Optional[str] = None
    queue_ttl: int = 300
    lock_ttl: int = 60
    batch_size: int = 100
    flush_threshold: int = 50
    drain_interval: int = 60

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "QueueSettings":
        env = os.environ if env is None else env
        settings = cls(
            db_path=env.get("APP_DB_PATH") or str(ROOT / "app.sqlite"),
            backend=(env.get("IMPRESSION_QUEUE_BACKEND") or "sqlite").lower(),
            redis_url=env.get("REDIS_URL") or None,
            queue_ttl=_int_env(env, "IMPRESSION_QUEUE_TTL", 300),
            lock_ttl=_int_env(env, "IMPRESSION_LOCK_TTL", 60),
            batch_size=_int_env(env, "IMPRESSION_BATCH_SIZE", 100),
            flush_threshold=_int_env(env, "IMPRESSION_FLUSH_THRESHOLD", 50),
            drain_interval=_int_env(env, "IMPRESSION_DRAIN_INTERVAL", 60),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigurationError(
                f"Unknown IMPRESSION_QUEUE_BACKEND {self.backend!r}; expected one of {', '.join(BACKENDS)}"
            )
        if self.backend == "redis" and not self.redis_url:
            raise ConfigurationError("IMPRESSION_QUEUE_BACKEND=redis requires REDIS_URL")
