"""SQLAlchemy ORM models and enums.

This module defines the tenant-scoped store using UUID primary keys. Every
domain row (orders, products, customers, ledger events) carries a `tenant_id`
and is unique on (tenant, external Shopify id) so that redelivered events
land on the same row.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, ForeignKey, Numeric, JSON, Text, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class EntityTypeEnum(str, enum.Enum):
    """Entity families pulled by the reconciliation worker."""
    orders = "orders"
    products = "products"
    customers = "customers"


# Tenants -------------------------------------------------------

class Tenant(Base):
    """One connected Shopify store.

    WHAT: Shop identity, API credential and per-entity reconciliation watermarks
    WHY: Every inbound webhook is resolved to a tenant via `shop_domain`; the
         reconciliation worker uses `access_token` and the `last_*_sync` columns
         to pull only what changed since the previous run
    """
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    shop_domain = Column(String, nullable=False, unique=True)  # e.g., "mystore.myshopify.com"
    access_token = Column(String, nullable=True)  # Cleared on app/uninstalled
    active = Column(Boolean, nullable=False, default=True)

    # Reconciliation watermarks (start time of last successful entity run)
    last_order_sync = Column(DateTime, nullable=True)
    last_product_sync = Column(DateTime, nullable=True)
    last_customer_sync = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    orders = relationship("Order", back_populates="tenant", cascade="all, delete-orphan")
    products = relationship("Product", back_populates="tenant", cascade="all, delete-orphan")
    customers = relationship("Customer", back_populates="tenant", cascade="all, delete-orphan")
    webhook_events = relationship("WebhookEvent", back_populates="tenant", cascade="all, delete-orphan")

    def __str__(self):
        state = "active" if self.active else "inactive"
        return f"{self.name} ({self.shop_domain}, {state})"


# Idempotency ledger --------------------------------------------

class WebhookEvent(Base):
    """Ledger row for one (tenant, topic, external id) delivery.

    WHAT: Records every ingested event with its processing outcome
    WHY: `processed=True` is the idempotency guard; unprocessed rows are the
         retry backlog for the operator endpoints
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "topic", "shopify_id", name="uq_webhook_event"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=True)

    shopify_id = Column(String, nullable=False)  # Payload id, or X-Shopify-Webhook-Id fallback
    topic = Column(String, nullable=False)  # e.g., "orders/create"
    payload = Column(JSON, nullable=False)

    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="webhook_events")

    def __str__(self):
        state = "processed" if self.processed else "pending"
        return f"{self.topic} #{self.shopify_id} ({state})"


# Domain entities -----------------------------------------------

class Customer(Base):
    """Shopify customer, tenant scoped."""
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "shopify_id", name="uq_customer_tenant_shopify"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    shopify_id = Column(String, nullable=False)

    # PII - handle with care
    email = Column(String, nullable=True)  # May be null for guest checkouts
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)

    shopify_created_at = Column(DateTime, nullable=True)
    shopify_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="customers")
    orders = relationship("Order", back_populates="customer")

    def __str__(self):
        name = f"{self.first_name or ''} {self.last_name or ''}".strip() or "Guest"
        return f"{name} ({self.email or 'No email'})"


class Order(Base):
    """Shopify order with monetary totals and statuses.

    WHAT: Latest known state of an order; overwritten in full on every upsert
    WHY: Webhooks and reconciliation pulls both deliver complete order snapshots
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "shopify_id", name="uq_order_tenant_shopify"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    shopify_id = Column(String, nullable=False)

    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=True)
    customer_shopify_id = Column(String, nullable=True)

    order_number = Column(String, nullable=False)  # e.g., "1001" or "#1001"
    email = Column(String, nullable=True)

    # Money (exact decimal, never float)
    total_price = Column(Numeric(18, 4), nullable=False)
    subtotal_price = Column(Numeric(18, 4), nullable=True)
    tax_price = Column(Numeric(18, 4), nullable=True)
    currency = Column(String, nullable=False, default="USD")  # ISO currency code

    financial_status = Column(String, nullable=True)  # paid, pending, refunded, ...
    fulfillment_status = Column(String, nullable=True)  # fulfilled, partial, null

    shopify_created_at = Column(DateTime, nullable=True)
    shopify_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="orders")
    customer = relationship("Customer", back_populates="orders")

    def __str__(self):
        return f"Order {self.order_number} ({self.currency} {self.total_price})"


class Product(Base):
    """Shopify product; price and SKU come from the first variant."""
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("tenant_id", "shopify_id", name="uq_product_tenant_shopify"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    shopify_id = Column(String, nullable=False)

    title = Column(String, nullable=False)
    handle = Column(String, nullable=True)  # URL-friendly handle
    description = Column(Text, nullable=True)  # body_html
    vendor = Column(String, nullable=True)
    product_type = Column(String, nullable=True)
    status = Column(String, nullable=True)  # active, archived, draft
    tags = Column(JSON, nullable=True)  # List of trimmed tag strings

    price = Column(Numeric(18, 4), nullable=True)  # First variant price
    sku = Column(String, nullable=True)  # First variant SKU

    shopify_created_at = Column(DateTime, nullable=True)
    shopify_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="products")

    def __str__(self):
        return f"{self.title} (${self.price})"
