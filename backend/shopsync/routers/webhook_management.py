"""Operator endpoints for the webhook ledger, DLQ and subscriptions.

WHAT:
    - Ledger: list events, stats, single and batch retry, mark-failed
    - Dead-letter queue: inspect, replay with backoff, clear
    - Subscriptions: register / list / delete-all on the tenant's shop
    - Reconciliation: trigger a run now

WHY:
    Failed events stay in the ledger as processed=False; these endpoints are
    how an operator drains that backlog after an outage.

REFERENCES:
    - shopsync/services/event_store.py
    - shopsync/services/ingestion.py (retry paths)
    - shopsync/services/webhook_subscription_service.py
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Optional
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import (
    Settings,
    get_app_settings,
    get_reconciliation_worker,
    get_resilience,
    get_shopify_http_client,
)
from ..errors import IngestionError, ShopifyAPIError
from ..models import Tenant
from ..schemas import (
    BatchRetryResponse,
    DeadLetterList,
    DeadLetterOut,
    Pagination,
    ReplayResponse,
    RetryResponse,
    SubscriptionResponse,
    SyncRunResponse,
    WebhookEventList,
    WebhookEventOut,
    WebhookStats,
)
from ..services import webhook_subscription_service
from ..services.event_store import EventStore, total_pages
from ..services.ingestion import replay_envelope, retry_event, retry_failed_for_tenant
from ..services.resilience import ResilienceWrapper
from ..services.shopify_client import ShopifyRestClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhook-management", tags=["Webhook Management"])


# =============================================================================
# HELPERS
# =============================================================================

def _get_tenant(db: Session, tenant_id: UUID) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant


def _client_for(tenant: Tenant, settings: Settings, http_client: Optional[httpx.AsyncClient]) -> ShopifyRestClient:
    if not tenant.access_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant has no access token. Please reinstall the app.",
        )
    return ShopifyRestClient(
        shop_domain=tenant.shop_domain,
        access_token=tenant.access_token,
        api_version=settings.SHOPIFY_API_VERSION,
        http_client=http_client,
    )


def _http_error(e: IngestionError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


# =============================================================================
# LEDGER
# =============================================================================

@router.get("/events/{tenant_id}", response_model=WebhookEventList)
def list_events(
    tenant_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=250),
    topic: Optional[str] = Query(None),
    processed: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
):
    """Paginated ledger rows for a tenant, newest first."""
    _get_tenant(db, tenant_id)
    events, total = EventStore(db).list_events(tenant_id, page=page, limit=limit, topic=topic, processed=processed)
    return WebhookEventList(
        events=[WebhookEventOut.model_validate(event) for event in events],
        pagination=Pagination(page=page, limit=limit, total=total, pages=total_pages(total, limit)),
    )


@router.get("/stats/{tenant_id}", response_model=WebhookStats)
def event_stats(
    tenant_id: UUID,
    days: int = Query(7, ge=1, le=365),
    db: Session = Depends(get_db),
):
    _get_tenant(db, tenant_id)
    stats = EventStore(db).stats(tenant_id, days=days)
    return WebhookStats(
        period_days=days,
        total_events=stats.total_events,
        failed_events=stats.failed_events,
        success_rate=stats.success_rate,
        by_topic=stats.by_topic,
    )


@router.post("/retry/{event_id}", response_model=RetryResponse)
async def retry_single_event(event_id: UUID, db: Session = Depends(get_db)):
    """Re-run dispatch for one unprocessed event."""
    event = EventStore(db).get(event_id)
    if not event:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found")

    try:
        result = await retry_event(db, event)
    except IngestionError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("[WEBHOOK] Retry failed for event %s", event_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Retry failed: {e}")

    return RetryResponse(
        success=result.success,
        message="Event retried successfully" if result.success else result.message,
        data=result.data,
    )


@router.post("/retry-failed/{tenant_id}", response_model=BatchRetryResponse)
async def retry_failed_events(
    tenant_id: UUID,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """Retry unprocessed events for a tenant, oldest first."""
    _get_tenant(db, tenant_id)
    report = await retry_failed_for_tenant(db, tenant_id, limit=limit)
    return BatchRetryResponse(
        total=report.total,
        retried=report.retried,
        failed=report.failed,
        errors=report.errors,
    )


@router.post("/mark-failed/{event_id}", response_model=WebhookEventOut)
def mark_event_failed(
    event_id: UUID,
    error_message: str = Query("Manually marked as failed"),
    db: Session = Depends(get_db),
):
    store = EventStore(db)
    event = store.get(event_id)
    if not event:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found")
    return WebhookEventOut.model_validate(store.mark_failed(event, error_message))


# =============================================================================
# DEAD-LETTER QUEUE
# =============================================================================

@router.get("/dead-letters", response_model=DeadLetterList)
def list_dead_letters(
    limit: int = Query(50, ge=1, le=1000),
    resilience: ResilienceWrapper = Depends(get_resilience),
):
    entries = resilience.dead_letters.get_failed(limit)
    return DeadLetterList(
        size=len(resilience.dead_letters),
        entries=[DeadLetterOut.model_validate(entry) for entry in entries],
    )


@router.post("/dead-letters/replay", response_model=ReplayResponse)
async def replay_dead_letters(
    batch_size: int = Query(5, ge=1, le=100),
    db: Session = Depends(get_db),
    resilience: ResilienceWrapper = Depends(get_resilience),
):
    """Replay the newest DLQ entries with exponential backoff."""
    report = await resilience.replay_dead_letters(
        lambda envelope: replay_envelope(db, envelope),
        batch_size=batch_size,
    )
    return ReplayResponse(
        attempted=report.attempted,
        succeeded=report.succeeded,
        failed=report.failed,
        remaining=len(resilience.dead_letters),
        errors=report.errors,
    )


@router.delete("/dead-letters", status_code=status.HTTP_204_NO_CONTENT)
def clear_dead_letters(resilience: ResilienceWrapper = Depends(get_resilience)):
    size = len(resilience.dead_letters)
    resilience.dead_letters.clear()
    logger.warning("[DLQ] Cleared %d entries", size)


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

@router.post("/register/{tenant_id}", response_model=SubscriptionResponse)
async def register_webhooks(
    tenant_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http_client: Optional[httpx.AsyncClient] = Depends(get_shopify_http_client),
):
    """Subscribe every handled topic that is not subscribed yet."""
    tenant = _get_tenant(db, tenant_id)
    client = _client_for(tenant, settings, http_client)
    try:
        results = await webhook_subscription_service.register_webhooks(client, settings.WEBHOOK_BASE_URL)
    except ShopifyAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except IngestionError as e:
        raise _http_error(e)
    return SubscriptionResponse(shop_domain=tenant.shop_domain, results=results)


@router.get("/list/{tenant_id}")
async def list_webhooks(
    tenant_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http_client: Optional[httpx.AsyncClient] = Depends(get_shopify_http_client),
):
    tenant = _get_tenant(db, tenant_id)
    client = _client_for(tenant, settings, http_client)
    try:
        webhooks = await webhook_subscription_service.get_webhooks(client)
    except ShopifyAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return {"shop_domain": tenant.shop_domain, "webhooks": webhooks}


@router.delete("/delete-all/{tenant_id}", response_model=SubscriptionResponse)
async def delete_all_webhooks(
    tenant_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http_client: Optional[httpx.AsyncClient] = Depends(get_shopify_http_client),
):
    tenant = _get_tenant(db, tenant_id)
    client = _client_for(tenant, settings, http_client)
    try:
        results = await webhook_subscription_service.delete_all_webhooks(client)
    except ShopifyAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return SubscriptionResponse(shop_domain=tenant.shop_domain, results=results)


# =============================================================================
# RECONCILIATION
# =============================================================================

@router.post("/sync", response_model=SyncRunResponse)
async def trigger_sync(worker=Depends(get_reconciliation_worker)):
    """Run reconciliation now; skipped if a run is already in progress."""
    report = await worker.run_sync()
    return SyncRunResponse.model_validate(asdict(report))
