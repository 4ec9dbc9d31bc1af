"""Idempotency ledger for ingested events.

WHAT:
    Persists one WebhookEvent row per (tenant, topic, external id) with its
    processing outcome, and answers "was this already applied?".

WHY:
    Shopify delivers at-least-once. `processed=True` on the ledger row is the
    guard that turns redelivery into a no-op; `processed=False` rows are the
    retry backlog exposed to operators.

    Check-then-log is not atomic: two simultaneous deliveries of the same event
    can both pass `is_processed`. That race is accepted; the entity upserts
    converge on one row either way.

REFERENCES:
    - shopsync/services/ingestion.py (pipeline caller)
    - shopsync/routers/webhook_management.py (operator reads)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import WebhookEvent
from .upsert import upsert_row

logger = logging.getLogger(__name__)

LEDGER_KEY = ("tenant_id", "topic", "shopify_id")


@dataclass
class EventStats:
    """Ledger statistics for one tenant over a time window."""
    total_events: int = 0
    failed_events: int = 0
    success_rate: float = 100.0
    by_topic: List[Dict[str, Any]] = field(default_factory=list)


class EventStore:
    """Ledger access bound to one database session.

    Usage:
        store = EventStore(db)
        if store.is_processed(tenant.id, "12345", "orders/create"):
            return
        store.log(tenant.id, "12345", "orders/create", payload)
        ...
        store.log(tenant.id, "12345", "orders/create", payload, processed=True)
    """

    def __init__(self, db: Session):
        self.db = db

    # -------------------------------------------------------------------------
    # Idempotency
    # -------------------------------------------------------------------------

    def find(self, tenant_id: Optional[UUID], shopify_id: str, topic: str) -> Optional[WebhookEvent]:
        query = self.db.query(WebhookEvent).filter(
            WebhookEvent.topic == topic,
            WebhookEvent.shopify_id == str(shopify_id),
        )
        if tenant_id is None:
            query = query.filter(WebhookEvent.tenant_id.is_(None))
        else:
            query = query.filter(WebhookEvent.tenant_id == tenant_id)
        return query.first()

    def is_processed(self, tenant_id: Optional[UUID], shopify_id: str, topic: str) -> bool:
        """True only if a ledger row exists and is marked processed."""
        event = self.find(tenant_id, shopify_id, topic)
        return bool(event and event.processed)

    def log(
        self,
        tenant_id: Optional[UUID],
        shopify_id: str,
        topic: str,
        payload: Dict[str, Any],
        processed: bool = False,
        error_message: Optional[str] = None,
    ) -> WebhookEvent:
        """Upsert the ledger row and commit.

        On conflict the outcome fields and payload are overwritten, so the row
        always reflects the latest attempt.
        """
        processed_at = datetime.utcnow() if processed else None

        if tenant_id is None:
            # NULL never conflicts in a unique constraint; fall back to lookup
            event = self.find(None, shopify_id, topic)
            if event is None:
                event = WebhookEvent(tenant_id=None, shopify_id=str(shopify_id), topic=topic)
                self.db.add(event)
            event.payload = payload
            event.processed = processed
            event.processed_at = processed_at
            event.error_message = error_message
            self.db.commit()
            return event

        values = {
            "tenant_id": tenant_id,
            "topic": topic,
            "shopify_id": str(shopify_id),
            "payload": payload,
            "processed": processed,
            "processed_at": processed_at,
            "error_message": error_message,
        }
        event = upsert_row(self.db, WebhookEvent, values, LEDGER_KEY)
        self.db.commit()
        return event

    # -------------------------------------------------------------------------
    # Operator reads / updates
    # -------------------------------------------------------------------------

    def get(self, event_id: UUID) -> Optional[WebhookEvent]:
        return self.db.query(WebhookEvent).filter(WebhookEvent.id == event_id).first()

    def list_events(
        self,
        tenant_id: UUID,
        page: int = 1,
        limit: int = 50,
        topic: Optional[str] = None,
        processed: Optional[bool] = None,
    ) -> Tuple[List[WebhookEvent], int]:
        """Newest-first page of ledger rows plus the total matching count."""
        query = self.db.query(WebhookEvent).filter(WebhookEvent.tenant_id == tenant_id)
        if topic:
            query = query.filter(WebhookEvent.topic == topic)
        if processed is not None:
            query = query.filter(WebhookEvent.processed == processed)

        total = query.count()
        events = (
            query.order_by(WebhookEvent.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return events, total

    def failed_events(self, tenant_id: UUID, limit: int = 100) -> List[WebhookEvent]:
        """Unprocessed rows, oldest first."""
        return (
            self.db.query(WebhookEvent)
            .filter(
                WebhookEvent.tenant_id == tenant_id,
                WebhookEvent.processed.is_(False),
            )
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit)
            .all()
        )

    def stats(self, tenant_id: UUID, days: int = 7) -> EventStats:
        """Totals, failures and per-(topic, processed) counts since `days` ago."""
        since = datetime.utcnow() - timedelta(days=days)
        base = self.db.query(WebhookEvent).filter(
            WebhookEvent.tenant_id == tenant_id,
            WebhookEvent.created_at >= since,
        )

        total = base.count()
        failed = base.filter(WebhookEvent.processed.is_(False)).count()

        rows = (
            self.db.query(WebhookEvent.topic, WebhookEvent.processed, func.count(WebhookEvent.id))
            .filter(
                WebhookEvent.tenant_id == tenant_id,
                WebhookEvent.created_at >= since,
            )
            .group_by(WebhookEvent.topic, WebhookEvent.processed)
            .order_by(WebhookEvent.topic)
            .all()
        )

        success_rate = 100.0 if total == 0 else round((total - failed) / total * 100, 2)
        return EventStats(
            total_events=total,
            failed_events=failed,
            success_rate=success_rate,
            by_topic=[
                {"topic": topic, "processed": bool(processed), "count": count}
                for topic, processed, count in rows
            ],
        )

    def mark_failed(self, event: WebhookEvent, message: str) -> WebhookEvent:
        event.processed = False
        event.processed_at = None
        event.error_message = message
        self.db.commit()
        logger.info("[WEBHOOK] Marked event %s as failed: %s", event.id, message)
        return event


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0
