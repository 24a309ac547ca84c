"""Runtime configuration.

Everything is read from environment variables exactly once, in
``Settings.from_env()``. The application factory takes a ``Settings``
instance, so tests build one directly instead of patching the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./giftpay.db"

ASAAS_PRODUCTION_URL = "https://api.asaas.com/v3"
ASAAS_SANDBOX_URL = "https://sandbox.asaas.com/api/v3"
ABACATEPAY_URL = "https://api.abacatepay.com/v1"

DEV_ORIGINS = (
    "http://localhost:5173",
    "http://localhost:3000",
    "http://localhost:8080",
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _origins_from_env() -> Tuple[str, ...]:
    raw = os.getenv("ALLOWED_ORIGINS", "")
    origins = tuple(o.strip() for o in raw.split(",") if o.strip())
    if origins:
        return origins
    site_url = os.getenv("SITE_URL")
    if site_url:
        return (site_url,)
    return DEV_ORIGINS


@dataclass(frozen=True)
class RateLimit:
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    environment: str = "development"
    allowed_origins: Tuple[str, ...] = DEV_ORIGINS

    # --- database pool / gate (pool settings only apply to postgres)
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    # --- payment gateway (card + PIX)
    asaas_api_key: Optional[str] = None
    asaas_base_url: Optional[str] = None
    gateway_timeout: float = 10.0
    gateway_retry_attempts: int = 3
    gateway_retry_base_delay: float = 1.0

    # --- hosted PIX billing gateway
    abacatepay_api_key: Optional[str] = None
    abacatepay_base_url: str = ABACATEPAY_URL

    # --- webhook authentication; None means "accept unsigned" with warning
    asaas_webhook_token: Optional[str] = None
    abacatepay_webhook_secret: Optional[str] = None

    # --- rate limiting
    ratelimit_backend: str = "memory"  # 'memory' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    payment_rate: RateLimit = field(
        default_factory=lambda: RateLimit(10, 60_000)
    )
    status_rate: RateLimit = field(
        default_factory=lambda: RateLimit(60, 60_000)
    )
    webhook_rate: RateLimit = field(
        default_factory=lambda: RateLimit(600, 60_000)
    )
    purchase_rate: RateLimit = field(
        default_factory=lambda: RateLimit(10, 60_000)
    )

    # --- logging
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def asaas_url(self) -> str:
        if self.asaas_base_url:
            return self.asaas_base_url.rstrip("/")
        # production keys carry the "$aact_" prefix, everything else is
        # treated as a sandbox key
        if self.asaas_api_key and self.asaas_api_key.startswith("$aact_"):
            return ASAAS_PRODUCTION_URL
        return ASAAS_SANDBOX_URL

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            environment=os.getenv("ENVIRONMENT", "development").lower(),
            allowed_origins=_origins_from_env(),
            db_pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            db_max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=int(os.getenv("DB_GATE_LIMIT", "0")) or None,
            asaas_api_key=os.getenv("ASAAS_API_KEY") or None,
            asaas_base_url=os.getenv("ASAAS_BASE_URL") or None,
            gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT", "10.0")),
            gateway_retry_attempts=int(
                os.getenv("GATEWAY_RETRY_ATTEMPTS", "3")
            ),
            gateway_retry_base_delay=float(
                os.getenv("GATEWAY_RETRY_BASE_DELAY", "1.0")
            ),
            abacatepay_api_key=os.getenv("ABACATEPAY_API_KEY") or None,
            abacatepay_base_url=os.getenv("ABACATEPAY_BASE_URL",
                                          ABACATEPAY_URL),
            asaas_webhook_token=os.getenv("ASAAS_WEBHOOK_TOKEN") or None,
            abacatepay_webhook_secret=(
                os.getenv("ABACATEPAY_WEBHOOK_SECRET") or None
            ),
            ratelimit_backend=os.getenv("RATELIMIT_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("LOG_JSON", True),
        )
