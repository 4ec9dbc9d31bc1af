"""Tests for payload mapping and upserts.

WHAT: transformer maps Shopify JSON onto tenant-scoped rows with full
      overwrite on conflict
WHY: Webhooks and reconciliation both rely on these being idempotent

REFERENCES:
  - shopsync/services/transformer.py
  - shopsync/services/upsert.py
"""

from decimal import Decimal

import pytest

from shopsync.errors import NotFoundError, ValidationError
from shopsync.models import Customer, Order, Product, Tenant
from shopsync.services import transformer


class TestParseTags:
    def test_comma_string_is_split_and_trimmed(self):
        assert transformer.parse_tags("sale, summer ,new") == ["sale", "summer", "new"]

    def test_empty_segments_dropped(self):
        assert transformer.parse_tags("a,, ,b") == ["a", "b"]

    def test_list_input(self):
        assert transformer.parse_tags([" a", "b "]) == ["a", "b"]

    def test_empty(self):
        assert transformer.parse_tags(None) == []
        assert transformer.parse_tags("") == []


class TestUpsertOrder:
    def test_creates_order_with_decimals_and_customer(self, test_db_session, tenant, order_payload):
        order = transformer.upsert_order(test_db_session, order_payload, tenant.id)
        test_db_session.commit()

        assert order.shopify_id == "12345"
        assert order.order_number == "TEST-001"
        assert order.total_price == Decimal("99.99")
        assert order.subtotal_price == Decimal("89.99")
        assert order.tax_price == Decimal("10.00")
        assert order.currency == "USD"
        assert order.financial_status == "paid"
        assert order.fulfillment_status is None

        customer = test_db_session.query(Customer).filter(Customer.tenant_id == tenant.id).one()
        assert customer.shopify_id == "67890"
        assert customer.first_name == "John"
        assert order.customer_id == customer.id
        assert order.customer_shopify_id == "67890"

    def test_shopify_timestamps_normalized_to_utc(self, test_db_session, tenant, order_payload):
        order = transformer.upsert_order(test_db_session, order_payload, tenant.id)
        assert order.shopify_created_at.hour == 15
        assert order.shopify_created_at.tzinfo is None

    def test_second_upsert_overwrites_every_field(self, test_db_session, tenant, order_payload):
        transformer.upsert_order(test_db_session, order_payload, tenant.id)
        test_db_session.commit()

        updated = dict(order_payload, total_price="120.00", financial_status="refunded", fulfillment_status="fulfilled")
        order = transformer.upsert_order(test_db_session, updated, tenant.id)
        test_db_session.commit()

        assert test_db_session.query(Order).count() == 1
        assert order.total_price == Decimal("120.00")
        assert order.financial_status == "refunded"
        assert order.fulfillment_status == "fulfilled"

    def test_absent_optional_fields_become_null(self, test_db_session, tenant, order_payload):
        """Full overwrite: a field missing from the newer payload is cleared, not kept."""
        transformer.upsert_order(test_db_session, order_payload, tenant.id)
        test_db_session.commit()

        sparse = {"id": 12345, "order_number": "TEST-001", "total_price": "99.99"}
        order = transformer.upsert_order(test_db_session, sparse, tenant.id)
        test_db_session.commit()

        assert order.subtotal_price is None
        assert order.tax_price is None
        assert order.financial_status is None
        assert order.customer_id is None

    def test_defaults(self, test_db_session, tenant):
        order = transformer.upsert_order(test_db_session, {"id": 1, "order_number": 1001}, tenant.id)
        assert order.currency == "USD"
        assert order.total_price == Decimal("0")
        assert order.order_number == "1001"

    def test_tax_price_fallback(self, test_db_session, tenant):
        payload = {"id": 2, "order_number": "2", "total_price": "10", "tax_price": "1.50"}
        order = transformer.upsert_order(test_db_session, payload, tenant.id)
        assert order.tax_price == Decimal("1.50")

    def test_existing_customer_reused_not_overwritten(self, test_db_session, tenant, order_payload):
        transformer.upsert_customer(
            test_db_session,
            {"id": 67890, "email": "real@example.com", "first_name": "Johnny", "phone": "+1555"},
            tenant.id,
        )
        test_db_session.commit()

        transformer.upsert_order(test_db_session, order_payload, tenant.id)
        test_db_session.commit()

        customer = test_db_session.query(Customer).one()
        assert customer.first_name == "Johnny"
        assert customer.phone == "+1555"

    def test_missing_id_rejected(self, test_db_session, tenant):
        with pytest.raises(ValidationError):
            transformer.upsert_order(test_db_session, {"order_number": "1"}, tenant.id)

    def test_missing_order_number_rejected(self, test_db_session, tenant):
        with pytest.raises(ValidationError):
            transformer.upsert_order(test_db_session, {"id": 1}, tenant.id)

    def test_garbage_price_rejected(self, test_db_session, tenant):
        with pytest.raises(ValidationError):
            transformer.upsert_order(
                test_db_session, {"id": 1, "order_number": "1", "total_price": "ninety"}, tenant.id
            )

    def test_non_finite_price_rejected(self, test_db_session, tenant):
        with pytest.raises(ValidationError):
            transformer.upsert_order(
                test_db_session, {"id": 1, "order_number": "1", "total_price": "NaN"}, tenant.id
            )

    def test_same_external_id_isolated_per_tenant(self, test_db_session, tenant, order_payload):
        other = Tenant(name="Other", email="other@shop.com", shop_domain="other.myshopify.com", active=True)
        test_db_session.add(other)
        test_db_session.commit()

        transformer.upsert_order(test_db_session, order_payload, tenant.id)
        transformer.upsert_order(test_db_session, dict(order_payload, total_price="5.00"), other.id)
        test_db_session.commit()

        assert test_db_session.query(Order).count() == 2
        mine = test_db_session.query(Order).filter(Order.tenant_id == tenant.id).one()
        assert mine.total_price == Decimal("99.99")


class TestUpsertProduct:
    def test_first_variant_price_and_sku(self, test_db_session, tenant):
        payload = {
            "id": 555,
            "title": "T-Shirt",
            "handle": "t-shirt",
            "body_html": "<p>Soft</p>",
            "vendor": "Acme",
            "product_type": "Apparel",
            "status": "active",
            "tags": "cotton, summer",
            "variants": [{"price": "19.99", "sku": "TS-1"}, {"price": "24.99", "sku": "TS-2"}],
        }
        product = transformer.upsert_product(test_db_session, payload, tenant.id)

        assert product.shopify_id == "555"
        assert product.description == "<p>Soft</p>"
        assert product.price == Decimal("19.99")
        assert product.sku == "TS-1"
        assert product.tags == ["cotton", "summer"]

    def test_no_variants(self, test_db_session, tenant):
        product = transformer.upsert_product(test_db_session, {"id": 1, "title": "Gift card"}, tenant.id)
        assert product.price is None
        assert product.sku is None
        assert product.tags == []

    def test_update_overwrites(self, test_db_session, tenant):
        transformer.upsert_product(test_db_session, {"id": 1, "title": "Old", "tags": "a"}, tenant.id)
        test_db_session.commit()
        product = transformer.upsert_product(test_db_session, {"id": 1, "title": "New"}, tenant.id)
        test_db_session.commit()

        assert test_db_session.query(Product).count() == 1
        assert product.title == "New"
        assert product.tags == []

    def test_missing_title_rejected(self, test_db_session, tenant):
        with pytest.raises(ValidationError):
            transformer.upsert_product(test_db_session, {"id": 1}, tenant.id)


class TestUpsertCustomer:
    def test_direct_mapping(self, test_db_session, tenant):
        customer = transformer.upsert_customer(
            test_db_session,
            {"id": 42, "email": "a@b.com", "first_name": "Ada", "last_name": "L", "phone": "+44"},
            tenant.id,
        )
        assert customer.shopify_id == "42"
        assert customer.email == "a@b.com"
        assert customer.last_name == "L"
        assert customer.phone == "+44"

    def test_missing_id_rejected(self, test_db_session, tenant):
        with pytest.raises(ValidationError):
            transformer.upsert_customer(test_db_session, {"email": "a@b.com"}, tenant.id)


class TestDeactivateTenant:
    def test_clears_token_and_deactivates(self, test_db_session, tenant):
        transformer.deactivate_tenant(test_db_session, tenant.id)
        test_db_session.commit()

        test_db_session.refresh(tenant)
        assert tenant.active is False
        assert tenant.access_token is None

    def test_unknown_tenant(self, test_db_session):
        from uuid import uuid4

        with pytest.raises(NotFoundError):
            transformer.deactivate_tenant(test_db_session, uuid4())
