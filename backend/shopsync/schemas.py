"""Pydantic schemas for response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


# Webhook ingestion ----------------------------------------------

class WebhookResponse(BaseModel):
    """Body returned to Shopify for a delivery."""

    success: bool
    message: str
    idempotent: Optional[bool] = Field(default=None, description="True when the event was already processed")
    data: Optional[Dict[str, Any]] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "message": "Webhook processed successfully",
                "data": {"orderId": "5c1d...", "shopifyId": "12345", "eventId": "9a2e..."},
            }
        }
    }


# Ledger ---------------------------------------------------------

class WebhookEventOut(BaseModel):
    """One idempotency ledger row."""

    id: UUID
    tenant_id: Optional[UUID] = None
    shopify_id: str
    topic: str
    payload: Dict[str, Any]
    processed: bool
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class WebhookEventList(BaseModel):
    events: List[WebhookEventOut]
    pagination: Pagination


class TopicCount(BaseModel):
    topic: str
    processed: bool
    count: int


class WebhookStats(BaseModel):
    """Ledger statistics over the last `period_days` days."""

    period_days: int
    total_events: int
    failed_events: int
    success_rate: float = Field(description="Percentage of events processed, 0-100")
    by_topic: List[TopicCount]


class RetryResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None


class BatchRetryResponse(BaseModel):
    total: int
    retried: int
    failed: int
    errors: List[str] = Field(default_factory=list)


# Dead-letter queue ----------------------------------------------

class DeadLetterOut(BaseModel):
    id: str
    tenant_id: Optional[str] = None
    topic: str
    payload: Dict[str, Any]
    error: str
    failed_at: datetime
    retry_count: int

    model_config = {"from_attributes": True}


class DeadLetterList(BaseModel):
    size: int
    entries: List[DeadLetterOut]


class ReplayResponse(BaseModel):
    attempted: int
    succeeded: int
    failed: int
    remaining: int
    errors: List[str] = Field(default_factory=list)


# Subscriptions --------------------------------------------------

class SubscriptionResult(BaseModel):
    topic: Optional[str] = None
    status: str = Field(description="created | exists | deleted | failed")
    webhook_id: Optional[Any] = Field(default=None, alias="webhookId")
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class SubscriptionResponse(BaseModel):
    shop_domain: str
    results: List[SubscriptionResult]


# Reconciliation -------------------------------------------------

class EntitySyncOut(BaseModel):
    entity: str
    pages: int
    synced: int
    failed: int
    aborted: bool
    errors: List[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class TenantSyncOut(BaseModel):
    tenant_id: str
    shop_domain: str
    entities: Dict[str, EntitySyncOut] = Field(default_factory=dict)
    error: Optional[str] = None

    model_config = {"from_attributes": True}


class SyncRunResponse(BaseModel):
    skipped: bool
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    tenants: List[TenantSyncOut] = Field(default_factory=list)

    model_config = {"from_attributes": True}


# Health ---------------------------------------------------------

class CircuitBreakerHealth(BaseModel):
    state: str
    stats: Dict[str, Any]
    dlq_size: int


class HealthResponse(BaseModel):
    status: str = Field(description="ok | degraded")
    database: str = Field(description="ok | error")
    circuit_breaker: CircuitBreakerHealth
    sync_running: bool = False
