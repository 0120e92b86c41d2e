"""
Runtime configuration for the streaming backend.

All settings come from environment variables and are read once at process start
into a `Settings` instance that is passed to the components that need it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_str(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_origins() -> List[str]:
    # CORS_ALLOW_ORIGINS is our documented var; ALLOWED_ORIGINS is what most platforms inject.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or os.getenv("ALLOWED_ORIGINS", "")
    return [o.strip() for o in raw.split(",") if o.strip()]


@dataclass(frozen=True)
class Settings:
    """Process-wide settings. Construct with `Settings.from_env()`."""

    auth_jwt_secret: Optional[str] = None
    auth_jwt_algorithm: str = "HS256"
    auth_jwt_audience: Optional[str] = "authenticated"

    media_root: str = "media"
    media_signing_secret: Optional[str] = None
    public_base_url: str = "http://localhost:8000"
    signed_url_ttl_seconds: int = 3600

    redis_url: Optional[str] = None

    recommendation_timeout_seconds: float = 2.0
    recommendation_cache_ttl_hours: float = 24.0
    recommendation_refresh_fraction: float = 0.75
    listening_retention_days: int = 90

    cron_secret: Optional[str] = None
    cors_origins: List[str] = field(default_factory=list)
    log_level: str = "INFO"

    # PUBLIC_INTERFACE
    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        jwt_secret = _env_str("AUTH_JWT_SECRET") or None
        return cls(
            auth_jwt_secret=jwt_secret,
            auth_jwt_algorithm=_env_str("AUTH_JWT_ALGORITHM", "HS256") or "HS256",
            auth_jwt_audience=_env_str("AUTH_JWT_AUDIENCE", "authenticated") or None,
            media_root=_env_str("MEDIA_ROOT", "media") or "media",
            media_signing_secret=_env_str("MEDIA_SIGNING_SECRET") or jwt_secret,
            public_base_url=(_env_str("PUBLIC_BASE_URL", "http://localhost:8000") or "http://localhost:8000").rstrip("/"),
            signed_url_ttl_seconds=_env_int("SIGNED_URL_TTL_SECONDS", 3600),
            redis_url=_env_str("REDIS_URL") or None,
            recommendation_timeout_seconds=_env_float("RECOMMENDATION_TIMEOUT_SECONDS", 2.0),
            recommendation_cache_ttl_hours=_env_float("RECOMMENDATION_CACHE_TTL_HOURS", 24.0),
            recommendation_refresh_fraction=_env_float("RECOMMENDATION_REFRESH_FRACTION", 0.75),
            listening_retention_days=_env_int("LISTENING_RETENTION_DAYS", 90),
            cron_secret=_env_str("CRON_SECRET") or None,
            cors_origins=_env_origins(),
            log_level=_env_str("LOG_LEVEL", "INFO").upper() or "INFO",
        )


# PUBLIC_INTERFACE
def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the API process and the job CLI."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
