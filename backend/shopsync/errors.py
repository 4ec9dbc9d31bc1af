"""Typed errors raised by the ingestion pipeline.

WHAT:
    One exception class per failure kind the webhook pipeline can produce.
    Each carries the HTTP status code the router maps it to.

WHY:
    Routers stay thin: they catch `IngestionError` once and render
    `{"error": str(exc)}` with `exc.status_code`. Services never import
    FastAPI's HTTPException.

    ┌──────────────────────┬──────┐
    │ AuthenticationError  │ 401  │
    │ InactiveTenantError  │ 403  │
    │ NotFoundError        │ 404  │
    │ ValidationError      │ 400  │
    │ TransientError       │ 500  │
    │  ├ CircuitOpenError  │ 500  │
    │  ├ CallTimeoutError  │ 500  │
    │  └ ShopifyAPIError   │ 500  │
    └──────────────────────┴──────┘
"""

from typing import List, Optional


class IngestionError(Exception):
    """Base class for every pipeline error."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(IngestionError):
    """Missing or invalid webhook signature."""

    status_code = 401


class NotFoundError(IngestionError):
    """Unknown shop domain, tenant or ledger event."""

    status_code = 404


class InactiveTenantError(IngestionError):
    """Tenant exists but is deactivated (uninstalled)."""

    status_code = 403


class ValidationError(IngestionError):
    """Malformed headers or payload. Never retried, never dead-lettered."""

    status_code = 400


class TransientError(IngestionError):
    """Failure that may succeed on retry (store down, upstream 5xx)."""

    status_code = 500


class CircuitOpenError(TransientError):
    """Raised without invoking the operation while the breaker is open."""


class CallTimeoutError(TransientError):
    """Wrapped operation exceeded the breaker's per-call timeout."""


class ShopifyAPIError(TransientError):
    """Shopify Admin API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message)
        self.http_status = status_code
        self.errors = errors or []
