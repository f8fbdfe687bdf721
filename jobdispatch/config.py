# jobdispatch/config.py
import os
from dataclasses import dataclass
from typing import Optional

from jobdispatch.common.job import DEFAULT_MAX_ATTEMPTS
from jobdispatch.storage.base import DEFAULT_VISIBILITY_TIMEOUT

BACKENDS = ("redis", "memory", "sql")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Broker, SMTP and queue settings. Read once at startup, never reloaded."""

    backend: str = "redis"

    # Broker
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    redis_connect_timeout: float = 5.0
    sql_url: str = "sqlite:///jobdispatch.db"

    # Email
    smtp_host: str = "smtp.mailtrap.io"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    email_from: str = "noreply@cms-buksu.edu.ph"

    # Queue defaults
    default_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {', '.join(BACKENDS)}")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            backend=os.getenv("JOBDISPATCH_BACKEND", "redis").strip().lower(),
            redis_url=os.getenv("REDIS_URL") or None,
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=_int_env("REDIS_PORT", 6379),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            redis_db=_int_env("REDIS_DB", 0),
            sql_url=os.getenv("JOBDISPATCH_SQL_URL", "sqlite:///jobdispatch.db"),
            smtp_host=os.getenv("SMTP_HOST", "smtp.mailtrap.io"),
            smtp_port=_int_env("SMTP_PORT", 587),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_pass=os.getenv("SMTP_PASS", ""),
            email_from=os.getenv("EMAIL_FROM", "noreply@cms-buksu.edu.ph"),
            default_max_attempts=_int_env(
                "JOBDISPATCH_DEFAULT_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS
            ),
            visibility_timeout=float(
                os.getenv("JOBDISPATCH_VISIBILITY_TIMEOUT", DEFAULT_VISIBILITY_TIMEOUT)
            ),
        )


class _GlobalConfig:
    def __init__(self):
        self.settings: Optional[Settings] = None


_GLOBAL_CONFIG = _GlobalConfig()


def configure(settings: Optional[Settings]) -> None:
    _GLOBAL_CONFIG.settings = settings


def get_settings() -> Settings:
    """The configured settings, loading them from the environment on first use."""
    if _GLOBAL_CONFIG.settings is None:
        _GLOBAL_CONFIG.settings = Settings.from_env()
    return _GLOBAL_CONFIG.settings
