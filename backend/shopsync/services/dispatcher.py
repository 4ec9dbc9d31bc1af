"""Topic-based dispatch of Shopify events to upsert handlers.

WHAT: Static mapping from webhook topic to one of four handler kinds, plus the
      transaction boundary around each handler call
WHY: Webhook delivery, operator retries, DLQ replay and reconciliation pulls
     all apply events through this one entry point

    orders/create ─┐
    orders/updated │
    orders/paid    ├──► upsert_order
    orders/cancelled
    orders/fulfilled┘
    products/create ┬──► upsert_product
    products/update ┘
    customers/create ┬─► upsert_customer
    customers/update ┘
    app/uninstalled ───► deactivate_tenant
    anything else ─────► DispatchResult(success=False, "Unhandled webhook topic")
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from . import transformer

logger = logging.getLogger(__name__)


class WebhookTopic(str, enum.Enum):
    orders_create = "orders/create"
    orders_updated = "orders/updated"
    orders_paid = "orders/paid"
    orders_cancelled = "orders/cancelled"
    orders_fulfilled = "orders/fulfilled"
    products_create = "products/create"
    products_update = "products/update"
    customers_create = "customers/create"
    customers_update = "customers/update"
    app_uninstalled = "app/uninstalled"


class HandlerKind(str, enum.Enum):
    order_upsert = "order-upsert"
    product_upsert = "product-upsert"
    customer_upsert = "customer-upsert"
    tenant_deactivate = "tenant-deactivate"


TOPIC_HANDLERS: Dict[WebhookTopic, HandlerKind] = {
    WebhookTopic.orders_create: HandlerKind.order_upsert,
    WebhookTopic.orders_updated: HandlerKind.order_upsert,
    WebhookTopic.orders_paid: HandlerKind.order_upsert,
    WebhookTopic.orders_cancelled: HandlerKind.order_upsert,
    WebhookTopic.orders_fulfilled: HandlerKind.order_upsert,
    WebhookTopic.products_create: HandlerKind.product_upsert,
    WebhookTopic.products_update: HandlerKind.product_upsert,
    WebhookTopic.customers_create: HandlerKind.customer_upsert,
    WebhookTopic.customers_update: HandlerKind.customer_upsert,
    WebhookTopic.app_uninstalled: HandlerKind.tenant_deactivate,
}


@dataclass
class DispatchResult:
    """Outcome of applying one event."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    message: str = ""


def handler_for(topic: str) -> Optional[HandlerKind]:
    """Handler kind for `topic`, or None if the topic is not supported."""
    try:
        return TOPIC_HANDLERS[WebhookTopic(topic)]
    except ValueError:
        return None


class WebhookDispatcher:
    """Applies one event to the store inside its own transaction.

    Usage:
        dispatcher = WebhookDispatcher(db)
        result = await dispatcher.process("orders/create", payload, tenant.id)
    """

    def __init__(self, db: Session):
        self.db = db
        self._handlers: Dict[HandlerKind, Callable[[Dict[str, Any], UUID], Dict[str, Any]]] = {
            HandlerKind.order_upsert: self._handle_order,
            HandlerKind.product_upsert: self._handle_product,
            HandlerKind.customer_upsert: self._handle_customer,
            HandlerKind.tenant_deactivate: self._handle_uninstall,
        }

    async def process(self, topic: str, payload: Dict[str, Any], tenant_id: UUID) -> DispatchResult:
        """Route `payload` to the handler for `topic`.

        Commits on success. On any handler error the session is rolled back
        and the error propagates to the caller (resilience wrapper / worker).
        Unknown topics return success=False without writing anything.

        Store work runs in a worker thread; a caller's asyncio timeout can
        fire while it blocks.
        """
        kind = handler_for(topic)
        if kind is None:
            logger.info("[DISPATCH] Unhandled webhook topic: %s", topic)
            return DispatchResult(success=False, message=f"Unhandled webhook topic: {topic}")

        data = await asyncio.to_thread(self._apply, kind, payload, tenant_id)

        logger.debug("[DISPATCH] %s applied via %s for tenant %s", topic, kind.value, tenant_id)
        return DispatchResult(success=True, data=data, message=f"Processed {topic}")

    def _apply(self, kind: HandlerKind, payload: Dict[str, Any], tenant_id: UUID) -> Dict[str, Any]:
        try:
            data = self._handlers[kind](payload, tenant_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return data

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _handle_order(self, payload: Dict[str, Any], tenant_id: UUID) -> Dict[str, Any]:
        order = transformer.upsert_order(self.db, payload, tenant_id)
        return {"orderId": str(order.id), "shopifyId": order.shopify_id}

    def _handle_product(self, payload: Dict[str, Any], tenant_id: UUID) -> Dict[str, Any]:
        product = transformer.upsert_product(self.db, payload, tenant_id)
        return {"productId": str(product.id), "shopifyId": product.shopify_id}

    def _handle_customer(self, payload: Dict[str, Any], tenant_id: UUID) -> Dict[str, Any]:
        customer = transformer.upsert_customer(self.db, payload, tenant_id)
        return {"customerId": str(customer.id), "shopifyId": customer.shopify_id}

    def _handle_uninstall(self, payload: Dict[str, Any], tenant_id: UUID) -> Dict[str, Any]:
        tenant = transformer.deactivate_tenant(self.db, tenant_id)
        return {"tenantId": str(tenant.id), "action": "deactivated"}
