"""Map Shopify payloads onto tenant-scoped rows.

WHAT:
    Pure mapping from webhook/REST payloads to Order, Product and Customer
    rows, written with "full overwrite on conflict" upserts keyed by
    (tenant_id, shopify_id). Plus the tenant deactivation used by
    app/uninstalled.

WHY:
    - Webhooks and reconciliation pulls deliver the same JSON shapes, so both
      paths share these functions through the dispatcher.
    - Upserts make redelivery and concurrent delivery converge on one row.
    - Nothing here commits; the dispatcher owns the transaction.

REFERENCES:
    - Shopify REST Order: https://shopify.dev/docs/api/admin-rest/latest/resources/order
    - shopsync/services/upsert.py (ON CONFLICT helper)
    - shopsync/services/dispatcher.py (caller)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ..errors import NotFoundError, ValidationError
from ..models import Customer, Order, Product, Tenant
from .upsert import upsert_row

logger = logging.getLogger(__name__)

TENANT_KEY = ("tenant_id", "shopify_id")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _require(payload: Dict[str, Any], field: str, entity: str) -> Any:
    value = payload.get(field)
    if value is None or value == "":
        raise ValidationError(f"Invalid {entity} payload: missing '{field}'")
    return value


def _parse_decimal(value: Any, field: str) -> Optional[Decimal]:
    """Parse a Shopify money string ("99.99") to Decimal.

    WHAT: Exact decimal parsing; floats never touch money columns
    WHY: Shopify sends money as strings; a garbage value is a payload error

    Raises:
        ValidationError: Value is present but not a finite number
    """
    if value is None or value == "":
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid decimal for '{field}': {value!r}")
    if not parsed.is_finite():
        raise ValidationError(f"Invalid decimal for '{field}': {value!r}")
    return parsed


def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string to a naive UTC datetime.

    WHAT: Convert Shopify datetime strings ("2024-01-01T10:00:00-05:00") to UTC
    WHY: Columns store naive UTC; Shopify timestamps are informational only, so
         an unparseable one is dropped rather than failing the event
    """
    if not dt_str:
        return None
    try:
        parsed = datetime.fromisoformat(str(dt_str).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        logger.debug("[TRANSFORM] Unparseable timestamp %r", dt_str)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_tags(tags: Any) -> List[str]:
    """Split Shopify's comma-delimited tag string into a trimmed list.

    Examples:
        "sale, summer ,new" -> ["sale", "summer", "new"]
        ["a ", "b"]          -> ["a", "b"]
        None / ""            -> []
    """
    if not tags:
        return []
    if isinstance(tags, str):
        items = tags.split(",")
    else:
        items = [str(tag) for tag in tags]
    return [tag.strip() for tag in items if tag and tag.strip()]


# =============================================================================
# UPSERTS
# =============================================================================

def upsert_customer(db: Session, payload: Dict[str, Any], tenant_id: UUID) -> Customer:
    """Upsert a customer keyed by (tenant, external id)."""
    shopify_id = str(_require(payload, "id", "customer"))

    values = {
        "tenant_id": tenant_id,
        "shopify_id": shopify_id,
        "email": payload.get("email"),
        "first_name": payload.get("first_name"),
        "last_name": payload.get("last_name"),
        "phone": payload.get("phone"),
        "shopify_created_at": _parse_datetime(payload.get("created_at")),
        "shopify_updated_at": _parse_datetime(payload.get("updated_at")),
    }
    customer = upsert_row(db, Customer, values, TENANT_KEY)
    logger.debug("[TRANSFORM] Upserted customer %s for tenant %s", shopify_id, tenant_id)
    return customer


def _resolve_order_customer(
    db: Session,
    customer_payload: Optional[Dict[str, Any]],
    tenant_id: UUID,
) -> Optional[Customer]:
    """Find the order's customer by (tenant, external id), creating it if absent.

    An existing customer row is not overwritten: the copy embedded in an
    order is often partial.
    """
    if not customer_payload or customer_payload.get("id") is None:
        return None

    existing = db.query(Customer).filter(
        Customer.tenant_id == tenant_id,
        Customer.shopify_id == str(customer_payload["id"]),
    ).first()
    if existing:
        return existing

    return upsert_customer(db, customer_payload, tenant_id)


def upsert_order(db: Session, payload: Dict[str, Any], tenant_id: UUID) -> Order:
    """Upsert an order keyed by (tenant, external id).

    Raises:
        ValidationError: Missing id/order_number or unparseable money fields
    """
    shopify_id = str(_require(payload, "id", "order"))
    order_number = str(_require(payload, "order_number", "order"))

    total_price = _parse_decimal(payload.get("total_price"), "total_price")
    subtotal_price = _parse_decimal(payload.get("subtotal_price"), "subtotal_price")
    # REST payloads carry total_tax; older fixtures carry tax_price
    tax_source = payload.get("total_tax")
    if tax_source is None:
        tax_source = payload.get("tax_price")
    tax_price = _parse_decimal(tax_source, "total_tax")

    customer_payload = payload.get("customer")
    customer = _resolve_order_customer(db, customer_payload, tenant_id)

    email = payload.get("email")
    if not email and customer_payload:
        email = customer_payload.get("email")

    values = {
        "tenant_id": tenant_id,
        "shopify_id": shopify_id,
        "order_number": order_number,
        "email": email,
        "customer_id": customer.id if customer else None,
        "customer_shopify_id": customer.shopify_id if customer else None,
        "total_price": total_price if total_price is not None else Decimal("0"),
        "subtotal_price": subtotal_price,
        "tax_price": tax_price,
        "currency": payload.get("currency") or "USD",
        "financial_status": payload.get("financial_status"),
        "fulfillment_status": payload.get("fulfillment_status"),
        "shopify_created_at": _parse_datetime(payload.get("created_at")),
        "shopify_updated_at": _parse_datetime(payload.get("updated_at")),
    }
    order = upsert_row(db, Order, values, TENANT_KEY)
    logger.debug("[TRANSFORM] Upserted order %s for tenant %s", shopify_id, tenant_id)
    return order


def upsert_product(db: Session, payload: Dict[str, Any], tenant_id: UUID) -> Product:
    """Upsert a product keyed by (tenant, external id).

    Price and SKU come from the first variant, when there is one.
    """
    shopify_id = str(_require(payload, "id", "product"))
    title = _require(payload, "title", "product")

    variants = payload.get("variants") or []
    first_variant = variants[0] if variants else {}

    values = {
        "tenant_id": tenant_id,
        "shopify_id": shopify_id,
        "title": title,
        "handle": payload.get("handle"),
        "description": payload.get("body_html"),
        "vendor": payload.get("vendor"),
        "product_type": payload.get("product_type"),
        "status": payload.get("status"),
        "tags": parse_tags(payload.get("tags")),
        "price": _parse_decimal(first_variant.get("price"), "variants[0].price"),
        "sku": first_variant.get("sku") or None,
        "shopify_created_at": _parse_datetime(payload.get("created_at")),
        "shopify_updated_at": _parse_datetime(payload.get("updated_at")),
    }
    product = upsert_row(db, Product, values, TENANT_KEY)
    logger.debug("[TRANSFORM] Upserted product %s for tenant %s", shopify_id, tenant_id)
    return product


def deactivate_tenant(db: Session, tenant_id: UUID) -> Tenant:
    """Clear the access token and mark the tenant inactive (app/uninstalled)."""
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if tenant is None:
        raise NotFoundError("Tenant not found")

    tenant.access_token = None
    tenant.active = False
    tenant.updated_at = datetime.utcnow()
    db.flush()

    logger.info("[TRANSFORM] Deactivated tenant %s (%s)", tenant.id, tenant.shop_domain)
    return tenant
