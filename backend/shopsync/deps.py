"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

import httpx
from fastapi import Request
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.resilience import ResilienceWrapper


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Store
    DATABASE_URL: str = "sqlite:///./shopsync.db"

    # Shopify
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2025-01"
    # Public base URL Shopify calls back to, e.g. "https://api.example.com"
    WEBHOOK_BASE_URL: Optional[str] = None

    # Signature bypass is honored only when WEBHOOK_TEST_MODE is true
    WEBHOOK_TEST_MODE: bool = False
    WEBHOOK_TEST_BYPASS_TOKEN: str = "test-hmac"

    # Circuit breaker
    BREAKER_TIMEOUT_SECONDS: float = 10.0
    BREAKER_ERROR_THRESHOLD_PERCENT: float = 50.0
    BREAKER_RESET_TIMEOUT_SECONDS: float = 30.0
    BREAKER_ROLLING_WINDOW_SECONDS: float = 10.0
    BREAKER_ROLLING_BUCKETS: int = 10
    BREAKER_VOLUME_THRESHOLD: int = 0

    # Dead-letter queue
    DLQ_MAX_SIZE: int = 1000

    # Reconciliation
    SYNC_ENABLED: bool = True
    SYNC_INTERVAL_MINUTES: float = 15
    SYNC_STARTUP_DELAY_SECONDS: float = 5
    SYNC_RATE_LIMIT_DELAY_SECONDS: float = 1.0

    # Error tracking
    SENTRY_DSN: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was created with."""
    return request.app.state.settings


def get_resilience(request: Request) -> ResilienceWrapper:
    """The app-wide resilience wrapper (breaker + DLQ)."""
    return request.app.state.resilience


def get_reconciliation_worker(request: Request):
    """The app-wide reconciliation worker."""
    return request.app.state.reconciliation_worker


def get_shopify_http_client(request: Request) -> Optional[httpx.AsyncClient]:
    """AsyncClient opened on startup; None outside the app lifespan (one client per call)."""
    return getattr(request.app.state, "shopify_http_client", None)
