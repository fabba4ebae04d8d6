"""
Pydantic Settings — centralized engine configuration loaded from environment variables.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Application ───────────────────────────
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # ── Retry / backoff ───────────────────────
    RETRY_MAX_RETRIES: int = Field(default=2, ge=0)
    RETRY_PRIMARY_MAX_RETRIES: int | None = Field(default=None, ge=0)
    RETRY_BASE_DELAY_MS: float = Field(default=1000, ge=0)
    RETRY_MAX_DELAY_MS: float = Field(default=30000, ge=0)
    RETRY_JITTER_MS: float = Field(default=1000, ge=0)
    RETRY_EXPONENTIAL_BACKOFF: bool = True

    # ── Circuit breaker ───────────────────────
    CIRCUIT_BREAKER_THRESHOLD: int = Field(default=3, ge=1)
    CIRCUIT_BREAKER_RESET_TIMEOUT_MS: float = Field(default=30000, ge=0)

    # ── Composite steps ───────────────────────
    FOREACH_MAX_CONCURRENCY: int = Field(default=4, ge=1)
    FOREACH_MIN_SUCCESSFUL_ITEMS: int = Field(default=1, ge=0)
    TRIGGER_MAX_DEPTH: int = Field(default=10, ge=1)

    # ── Observability hooks ───────────────────
    HOOKS_ENABLED: bool = True
    HOOK_TIMEOUT_MS: float = Field(default=5000, gt=0)
    HOOK_FIRE_AND_FORGET: bool = False
    OBSERVABILITY_SAMPLING_RATE: float = Field(default=1.0, ge=0.0, le=1.0)

    # ── HTTP provider ─────────────────────────
    HTTP_PROVIDER_TIMEOUT_S: float = Field(default=60.0, gt=0)

    model_config = {"env_file": [".env"], "extra": "ignore"}


settings = Settings()
