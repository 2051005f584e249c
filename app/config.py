"""Engine settings read from the environment (optionally seeded from app/.env)."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class EngineSettings:
    use_db: bool = False
    database_url: str | None = None
    db_pool_min: int = 1
    db_pool_max: int = 10
    query_slow_ms: int = 200
    worker_id: str = "worker"
    worker_poll_ms: int = 1000
    worker_batch: int = 10
    max_attempts: int = 5
    retry_base_seconds: int = 60
    retry_max_seconds: int = 3600
    stale_claim_seconds: int = 900
    flow_retention_days: int = 90
    webhook_timeout_seconds: int = 10

    @classmethod
    def from_env(cls, env_file: Path | None = ROOT / "app" / ".env") -> "EngineSettings":
        if env_file is not None:
            load_env_file(env_file)
        return cls(
            use_db=_env_flag("USE_DB"),
            database_url=os.getenv("DATABASE_URL") or None,
            db_pool_min=_env_int("MAILFLOW_DB_POOL_MIN", 1),
            db_pool_max=_env_int("MAILFLOW_DB_POOL_MAX", 10),
            query_slow_ms=_env_int("MAILFLOW_QUERY_SLOW_MS", 200),
            worker_id=os.getenv("WORKER_ID") or f"{socket.gethostname()}-{os.getpid()}",
            worker_poll_ms=_env_int("WORKER_POLL_MS", 1000),
            worker_batch=_env_int("WORKER_BATCH", 10),
            max_attempts=_env_int("MAILFLOW_MAX_ATTEMPTS", 5),
            retry_base_seconds=_env_int("MAILFLOW_RETRY_BASE_SECONDS", 60),
            retry_max_seconds=_env_int("MAILFLOW_RETRY_MAX_SECONDS", 3600),
            stale_claim_seconds=_env_int("MAILFLOW_STALE_CLAIM_SECONDS", 900),
            flow_retention_days=_env_int("MAILFLOW_FLOW_RETENTION_DAYS", 90),
            webhook_timeout_seconds=_env_int("MAILFLOW_WEBHOOK_TIMEOUT_SECONDS", 10),
        )
