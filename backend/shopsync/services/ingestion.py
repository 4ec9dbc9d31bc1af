"""Webhook ingestion pipeline.

WHAT:
    The ordered steps that turn one inbound HTTP delivery into an applied
    event, plus the operator retry paths over the same ledger.

WHY:
    Each step raises a typed error (shopsync.errors) so the router maps
    outcomes to status codes in one place, and the steps can be tested
    without HTTP.

PIPELINE:
    parse_headers ──► verify_signature ──► parse_payload ──► resolve_tenant
         400               401                  400            404 / 403
                                                                  │
    ┌─────────────────────────────────────────────────────────────┘
    ▼
    is_processed? ──yes──► 200 idempotent
         │no
    log(processed=False)
         │
    resilience.invoke(dispatcher.process)  ──error──► ledger error_message, DLQ, 500
         │                                 ──ValidationError──► ledger error_message, 400
    log(processed=True) ──► 200

REFERENCES:
    - shopsync/routers/webhooks.py (HTTP surface)
    - shopsync/routers/webhook_management.py (retry endpoints)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ..errors import AuthenticationError, IngestionError, NotFoundError, TransientError, ValidationError
from ..models import Tenant, WebhookEvent
from ..security import verify_webhook_signature
from ..telemetry.sentry import capture_exception
from .dispatcher import DispatchResult, WebhookDispatcher
from .event_store import EventStore
from .resilience import ResilienceWrapper, WebhookEnvelope
from .tenant_resolver import ensure_accepts, resolve_tenant

logger = logging.getLogger(__name__)


# =============================================================================
# PIPELINE STEPS
# =============================================================================

@dataclass
class WebhookHeaders:
    topic: str
    shop_domain: str
    signature: Optional[str] = None
    webhook_id: Optional[str] = None


def parse_headers(headers: Mapping[str, str]) -> WebhookHeaders:
    """Read the Shopify headers (case-insensitive mapping expected).

    Raises:
        ValidationError: Topic or shop domain header missing
    """
    topic = (headers.get("x-shopify-topic") or "").strip()
    shop_domain = (headers.get("x-shopify-shop-domain") or "").strip()
    if not topic or not shop_domain:
        raise ValidationError("Missing required Shopify headers")

    return WebhookHeaders(
        topic=topic,
        shop_domain=shop_domain.lower(),
        signature=headers.get("x-shopify-hmac-sha256"),
        webhook_id=headers.get("x-shopify-webhook-id"),
    )


def verify_signature(raw_body: bytes, webhook_headers: WebhookHeaders, settings) -> None:
    """Raises AuthenticationError unless the signature checks out."""
    valid = verify_webhook_signature(
        raw_body,
        webhook_headers.signature,
        settings.SHOPIFY_WEBHOOK_SECRET,
        test_mode=settings.WEBHOOK_TEST_MODE,
        bypass_token=settings.WEBHOOK_TEST_BYPASS_TOKEN,
    )
    if not valid:
        raise AuthenticationError("Invalid webhook signature")


def parse_payload(raw_body: bytes) -> Dict[str, Any]:
    """Parse the verified body as a JSON object.

    Raises:
        ValidationError: Body is not valid JSON or not an object
    """
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON payload")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def external_id(payload: Dict[str, Any], webhook_id: Optional[str]) -> str:
    """Ledger key: payload id, else the delivery's X-Shopify-Webhook-Id."""
    if payload.get("id") is not None:
        return str(payload["id"])
    if webhook_id:
        return str(webhook_id)
    return "unknown"


# =============================================================================
# INGESTOR
# =============================================================================

@dataclass
class IngestResult:
    """Outcome of one delivery, ready to render."""
    status_code: int
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    idempotent: bool = False

    def body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.idempotent:
            body["idempotent"] = True
        if self.data is not None:
            body["data"] = self.data
        return body


class WebhookIngestor:
    """Runs the full pipeline for one delivery.

    Usage:
        ingestor = WebhookIngestor(db, settings, resilience)
        result = await ingestor.ingest(raw_body, request.headers)
    """

    def __init__(self, db: Session, settings, resilience: ResilienceWrapper):
        self.db = db
        self.settings = settings
        self.resilience = resilience
        self.store = EventStore(db)
        self.dispatcher = WebhookDispatcher(db)

    async def ingest(self, raw_body: bytes, headers: Mapping[str, str]) -> IngestResult:
        """
        Raises:
            ValidationError: Bad headers/payload (400)
            AuthenticationError: Bad signature (401)
            NotFoundError / InactiveTenantError: Tenant resolution (404 / 403)
            TransientError: Processing failed; event is dead-lettered (500)
        """
        webhook_headers = parse_headers(headers)
        verify_signature(raw_body, webhook_headers, self.settings)
        payload = parse_payload(raw_body)

        topic = webhook_headers.topic
        tenant = resolve_tenant(self.db, webhook_headers.shop_domain, topic)
        shopify_id = external_id(payload, webhook_headers.webhook_id)

        logger.info(
            "[WEBHOOK] Received %s #%s for tenant %s (%s)",
            topic, shopify_id, tenant.id, tenant.shop_domain,
        )

        if self.store.is_processed(tenant.id, shopify_id, topic):
            logger.info("[WEBHOOK] Duplicate %s #%s ignored (already processed)", topic, shopify_id)
            return IngestResult(
                status_code=200,
                success=True,
                message="Webhook already processed",
                data={"idempotent": True},
                idempotent=True,
            )

        event = self.store.log(tenant.id, shopify_id, topic, payload)
        envelope = WebhookEnvelope(id=str(event.id), tenant_id=str(tenant.id), topic=topic, payload=payload)
        tenant_id = tenant.id

        try:
            result = await self.resilience.invoke(
                envelope,
                lambda: self.dispatcher.process(topic, payload, tenant_id),
            )
        except ValidationError as e:
            logger.warning("[WEBHOOK] Rejected %s #%s: %s", topic, shopify_id, e)
            self._record_failure(tenant_id, shopify_id, topic, payload, str(e))
            raise
        except IngestionError as e:
            logger.error("[WEBHOOK] Failed %s #%s: %s", topic, shopify_id, e)
            self._record_failure(tenant_id, shopify_id, topic, payload, str(e))
            raise
        except Exception as e:
            logger.exception("[WEBHOOK] Unexpected error processing %s #%s", topic, shopify_id)
            capture_exception(e, extra={"topic": topic, "tenant_id": str(tenant_id), "shopify_id": shopify_id})
            self._record_failure(tenant_id, shopify_id, topic, payload, str(e))
            raise TransientError(f"Webhook processing failed: {e}") from e

        if not result.success:
            self._record_failure(tenant_id, shopify_id, topic, payload, result.message)
            return IngestResult(status_code=200, success=False, message=result.message)

        self.store.log(tenant_id, shopify_id, topic, payload, processed=True)
        logger.info("[WEBHOOK] Processed %s #%s for tenant %s", topic, shopify_id, tenant_id)

        data = dict(result.data or {})
        data["eventId"] = envelope.id
        return IngestResult(status_code=200, success=True, message="Webhook processed successfully", data=data)

    def _record_failure(self, tenant_id: UUID, shopify_id: str, topic: str, payload: Dict[str, Any], message: str) -> None:
        """Write the failure onto the ledger row; a store outage here is logged, not raised."""
        try:
            self.store.log(tenant_id, shopify_id, topic, payload, processed=False, error_message=message)
        except Exception as e:
            self.db.rollback()
            logger.error("[WEBHOOK] Could not record failure for %s #%s: %s", topic, shopify_id, e)


# =============================================================================
# OPERATOR RETRIES
# =============================================================================

@dataclass
class BatchRetryReport:
    total: int = 0
    retried: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


async def retry_event(db: Session, event: WebhookEvent) -> DispatchResult:
    """Re-run dispatch for one unprocessed ledger row and record the outcome.

    Raises:
        ValidationError: Event already processed
        NotFoundError: Event has no tenant, or the tenant no longer exists
        InactiveTenantError: Tenant is inactive and the topic is not a lifecycle topic
    """
    if event.processed:
        raise ValidationError("Event already processed")
    _load_tenant(db, event.tenant_id, event.topic)

    store = EventStore(db)
    # Capture before dispatch: a rollback expires loaded instances
    tenant_id, shopify_id, topic, payload = event.tenant_id, event.shopify_id, event.topic, event.payload

    try:
        result = await WebhookDispatcher(db).process(topic, payload, tenant_id)
    except Exception as e:
        store.log(tenant_id, shopify_id, topic, payload, processed=False, error_message=str(e))
        raise

    store.log(
        tenant_id, shopify_id, topic, payload,
        processed=result.success,
        error_message=None if result.success else result.message,
    )
    logger.info("[WEBHOOK] Retried event %s (%s): success=%s", event.id, topic, result.success)
    return result


async def retry_failed_for_tenant(db: Session, tenant_id: UUID, limit: int = 100) -> BatchRetryReport:
    """Retry up to `limit` unprocessed rows for a tenant, oldest first."""
    report = BatchRetryReport()
    events = EventStore(db).failed_events(tenant_id, limit=limit)
    report.total = len(events)

    for event in events:
        event_id = event.id
        try:
            result = await retry_event(db, event)
        except Exception as e:
            report.failed += 1
            report.errors.append(f"{event_id}: {e}")
            logger.error("[WEBHOOK] Batch retry failed for %s: %s", event_id, e)
            continue
        if result.success:
            report.retried += 1
        else:
            report.failed += 1
            report.errors.append(f"{event_id}: {result.message}")

    logger.info(
        "[WEBHOOK] Batch retry for tenant %s: total=%d retried=%d failed=%d",
        tenant_id, report.total, report.retried, report.failed,
    )
    return report


async def replay_envelope(db: Session, envelope: WebhookEnvelope) -> DispatchResult:
    """Apply a dead-lettered event again and mark its ledger row.

    Used as the process function for ResilienceWrapper.replay_dead_letters.
    """
    if not envelope.tenant_id:
        raise NotFoundError("Tenant not found")
    tenant_id = UUID(envelope.tenant_id)
    _load_tenant(db, tenant_id, envelope.topic)

    result = await WebhookDispatcher(db).process(envelope.topic, envelope.payload, tenant_id)

    event = EventStore(db).get(UUID(envelope.id))
    if event is not None:
        EventStore(db).log(
            tenant_id, event.shopify_id, envelope.topic, envelope.payload,
            processed=result.success,
            error_message=None if result.success else result.message,
        )
    return result


def _load_tenant(db: Session, tenant_id: Optional[UUID], topic: str) -> Tenant:
    tenant = None
    if tenant_id is not None:
        tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if tenant is None:
        raise NotFoundError("Tenant not found")
    ensure_accepts(tenant, topic)
    return tenant
