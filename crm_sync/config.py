from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# Load env before anything else
load_dotenv()


def _float_or_none(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///:memory:"
    credentials_encryption_key: str = ""
    log_level: str = "INFO"
    frontend_origin: str = "http://localhost:3000"

    # Provider gateway
    http_timeout_seconds: float = 10.0
    sync_batch_size: int = 100
    rate_limit_tokens: int = 100
    rate_limit_interval_seconds: float = 60.0
    rate_limit_acquire_timeout_seconds: Optional[float] = None
    circuit_call_timeout_seconds: float = 15.0
    circuit_error_threshold_percent: float = 50.0
    circuit_rolling_window_seconds: float = 10.0
    circuit_volume_threshold: int = 5
    circuit_reset_timeout_seconds: float = 30.0

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            credentials_encryption_key=os.getenv("CREDENTIALS_ENCRYPTION_KEY", ""),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", cls.frontend_origin),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds)),
            sync_batch_size=int(os.getenv("SYNC_BATCH_SIZE", cls.sync_batch_size)),
            rate_limit_tokens=int(os.getenv("RATE_LIMIT_TOKENS", cls.rate_limit_tokens)),
            rate_limit_interval_seconds=float(
                os.getenv("RATE_LIMIT_INTERVAL_SECONDS", cls.rate_limit_interval_seconds)
            ),
            rate_limit_acquire_timeout_seconds=_float_or_none(
                os.getenv("RATE_LIMIT_ACQUIRE_TIMEOUT_SECONDS")
            ),
            circuit_call_timeout_seconds=float(
                os.getenv("CIRCUIT_CALL_TIMEOUT_SECONDS", cls.circuit_call_timeout_seconds)
            ),
            circuit_error_threshold_percent=float(
                os.getenv("CIRCUIT_ERROR_THRESHOLD_PERCENT", cls.circuit_error_threshold_percent)
            ),
            circuit_rolling_window_seconds=float(
                os.getenv("CIRCUIT_ROLLING_WINDOW_SECONDS", cls.circuit_rolling_window_seconds)
            ),
            circuit_volume_threshold=int(
                os.getenv("CIRCUIT_VOLUME_THRESHOLD", cls.circuit_volume_threshold)
            ),
            circuit_reset_timeout_seconds=float(
                os.getenv("CIRCUIT_RESET_TIMEOUT_SECONDS", cls.circuit_reset_timeout_seconds)
            ),
            scheduler_enabled=os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes"),
            scheduler_interval_seconds=float(
                os.getenv("SCHEDULER_INTERVAL_SECONDS", cls.scheduler_interval_seconds)
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
