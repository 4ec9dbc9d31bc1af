"""HTTP tests for the operator endpoints and /health."""

import asyncio
import json
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from shopsync.errors import InactiveTenantError
from shopsync.models import Order, Tenant, WebhookEvent
from shopsync.services.event_store import EventStore
from shopsync.services.ingestion import replay_envelope
from shopsync.services.resilience import WebhookEnvelope

PREFIX = "/api/webhook-management"


@pytest.fixture
def failed_event(test_db_session, tenant, order_payload):
    return EventStore(test_db_session).log(
        tenant.id, "12345", "orders/create", order_payload, error_message="connection refused"
    )


class FakeShopifyWebhooks:
    def __init__(self, existing=None, failing_topics=()):
        self.existing = list(existing or [])
        self.failing_topics = set(failing_topics)
        self.created = []
        self.deleted = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path.endswith("/webhooks.json"):
            return httpx.Response(200, json={"webhooks": self.existing})
        if request.method == "POST" and path.endswith("/webhooks.json"):
            webhook = json.loads(request.content)["webhook"]
            if webhook["topic"] in self.failing_topics:
                return httpx.Response(422, json={"errors": {"topic": ["Invalid topic"]}})
            self.created.append(webhook)
            return httpx.Response(201, json={"webhook": {"id": len(self.created) + 100, **webhook}})
        if request.method == "DELETE":
            self.deleted.append(path)
            return httpx.Response(200, json={})
        if path.endswith(".json"):
            resource = path.rsplit("/", 1)[-1][: -len(".json")]
            return httpx.Response(200, json={resource: []})
        return httpx.Response(404)


@pytest.fixture
def shopify(app):
    fake = FakeShopifyWebhooks()
    app.state.shopify_http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    return fake


# =============================================================================
# Ledger
# =============================================================================

class TestLedgerEndpoints:
    def test_list_events(self, client, tenant, failed_event):
        response = client.get(f"{PREFIX}/events/{tenant.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"] == {"page": 1, "limit": 50, "total": 1, "pages": 1}
        assert body["events"][0]["shopify_id"] == "12345"
        assert body["events"][0]["processed"] is False
        assert body["events"][0]["error_message"] == "connection refused"

    def test_list_events_filters(self, client, tenant, failed_event):
        assert client.get(f"{PREFIX}/events/{tenant.id}", params={"processed": "true"}).json()["events"] == []
        assert len(client.get(f"{PREFIX}/events/{tenant.id}", params={"topic": "orders/create"}).json()["events"]) == 1

    def test_unknown_tenant(self, client):
        response = client.get(f"{PREFIX}/events/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["detail"] == "Tenant not found"

    def test_stats(self, client, tenant, failed_event):
        body = client.get(f"{PREFIX}/stats/{tenant.id}", params={"days": 3}).json()

        assert body["period_days"] == 3
        assert body["total_events"] == 1
        assert body["failed_events"] == 1
        assert body["success_rate"] == 0.0
        assert body["by_topic"] == [{"topic": "orders/create", "processed": False, "count": 1}]

    def test_retry_single_event(self, client, test_db_session, failed_event):
        response = client.post(f"{PREFIX}/retry/{failed_event.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Event retried successfully"
        assert body["data"]["shopifyId"] == "12345"

        test_db_session.expire_all()
        event = test_db_session.query(WebhookEvent).one()
        assert event.processed is True
        assert event.error_message is None
        assert test_db_session.query(Order).count() == 1

    def test_retry_already_processed(self, client, test_db_session, tenant, order_payload):
        event = EventStore(test_db_session).log(tenant.id, "12345", "orders/create", order_payload, processed=True)
        response = client.post(f"{PREFIX}/retry/{event.id}")
        assert response.status_code == 400
        assert response.json()["detail"] == "Event already processed"

    def test_retry_rejected_for_inactive_tenant(self, client, test_db_session, inactive_tenant, order_payload):
        event = EventStore(test_db_session).log(
            inactive_tenant.id, "12345", "orders/create", order_payload, error_message="connection refused"
        )

        response = client.post(f"{PREFIX}/retry/{event.id}")

        assert response.status_code == 403
        assert response.json()["detail"] == "Tenant is inactive"
        assert test_db_session.query(Order).count() == 0

    def test_retry_uninstall_allowed_for_inactive_tenant(self, client, test_db_session, inactive_tenant):
        event = EventStore(test_db_session).log(
            inactive_tenant.id, "1", "app/uninstalled", {"id": 1}, error_message="connection refused"
        )

        response = client.post(f"{PREFIX}/retry/{event.id}")

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_retry_unknown_event(self, client):
        response = client.post(f"{PREFIX}/retry/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["detail"] == "Webhook event not found"

    def test_retry_failed_batch(self, client, test_db_session, tenant, failed_event):
        EventStore(test_db_session).log(tenant.id, "bad", "orders/create", {"id": "bad"}, error_message="x")

        body = client.post(f"{PREFIX}/retry-failed/{tenant.id}").json()

        assert body["total"] == 2
        assert body["retried"] == 1
        assert body["failed"] == 1
        assert "order_number" in body["errors"][0]

    def test_mark_failed(self, client, test_db_session, tenant, order_payload):
        event = EventStore(test_db_session).log(tenant.id, "12345", "orders/create", order_payload, processed=True)

        response = client.post(f"{PREFIX}/mark-failed/{event.id}", params={"error_message": "bad data"})

        assert response.status_code == 200
        assert response.json()["processed"] is False
        assert response.json()["error_message"] == "bad data"

    def test_mark_failed_default_message(self, client, failed_event):
        body = client.post(f"{PREFIX}/mark-failed/{failed_event.id}").json()
        assert body["error_message"] == "Manually marked as failed"


# =============================================================================
# Dead-letter queue
# =============================================================================

class TestDeadLetterEndpoints:
    def _dead_letter(self, app, event, tenant, payload):
        envelope = WebhookEnvelope(id=str(event.id), tenant_id=str(tenant.id), topic="orders/create", payload=payload)
        app.state.resilience.dead_letters.add(envelope, RuntimeError("connection refused"))

    def test_list(self, app, client, tenant, failed_event, order_payload):
        self._dead_letter(app, failed_event, tenant, order_payload)

        body = client.get(f"{PREFIX}/dead-letters").json()
        assert body["size"] == 1
        entry = body["entries"][0]
        assert entry["id"] == str(failed_event.id)
        assert entry["error"] == "connection refused"
        assert entry["retry_count"] == 0

    def test_replay_applies_and_removes(self, app, client, test_db_session, tenant, failed_event, order_payload):
        self._dead_letter(app, failed_event, tenant, order_payload)

        body = client.post(f"{PREFIX}/dead-letters/replay").json()

        assert body == {"attempted": 1, "succeeded": 1, "failed": 0, "remaining": 0, "errors": []}
        test_db_session.expire_all()
        assert test_db_session.query(WebhookEvent).one().processed is True
        assert test_db_session.query(Order).count() == 1

    def test_replay_rejected_for_inactive_tenant(self, test_db_session, inactive_tenant, order_payload):
        event = EventStore(test_db_session).log(
            inactive_tenant.id, "12345", "orders/create", order_payload, error_message="connection refused"
        )
        envelope = WebhookEnvelope(
            id=str(event.id), tenant_id=str(inactive_tenant.id), topic="orders/create", payload=order_payload
        )

        with pytest.raises(InactiveTenantError):
            asyncio.run(replay_envelope(test_db_session, envelope))
        assert test_db_session.query(Order).count() == 0

    def test_clear(self, app, client, tenant, failed_event, order_payload):
        self._dead_letter(app, failed_event, tenant, order_payload)

        response = client.delete(f"{PREFIX}/dead-letters")
        assert response.status_code == 204
        assert len(app.state.resilience.dead_letters) == 0


# =============================================================================
# Subscriptions
# =============================================================================

class TestSubscriptionEndpoints:
    def test_register(self, client, tenant, shopify):
        shopify.existing = [{"id": 1, "topic": "orders/create"}]
        shopify.failing_topics = {"products/update"}

        response = client.post(f"{PREFIX}/register/{tenant.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["shop_domain"] == tenant.shop_domain
        by_topic = {r["topic"]: r for r in body["results"]}
        assert len(by_topic) == 10
        assert by_topic["orders/create"]["status"] == "exists"
        assert by_topic["orders/create"]["webhookId"] == 1
        assert by_topic["products/update"]["status"] == "failed"
        assert by_topic["app/uninstalled"]["status"] == "created"
        assert all(w["address"] == "https://hooks.example.com/api/webhooks/shopify" for w in shopify.created)

    def test_register_without_token(self, client, inactive_tenant, shopify):
        response = client.post(f"{PREFIX}/register/{inactive_tenant.id}")
        assert response.status_code == 400

    def test_list(self, client, tenant, shopify):
        shopify.existing = [{"id": 5, "topic": "orders/paid"}]
        body = client.get(f"{PREFIX}/list/{tenant.id}").json()
        assert body["webhooks"] == [{"id": 5, "topic": "orders/paid"}]

    def test_delete_all(self, client, tenant, shopify):
        shopify.existing = [{"id": 5, "topic": "orders/paid"}, {"id": 6, "topic": "orders/create"}]

        body = client.delete(f"{PREFIX}/delete-all/{tenant.id}").json()

        assert [r["status"] for r in body["results"]] == ["deleted", "deleted"]
        assert len(shopify.deleted) == 2


# =============================================================================
# Reconciliation & health
# =============================================================================

class TestSyncEndpoint:
    def test_trigger_sync(self, app, client, test_db_session, tenant, shopify):
        app.state.reconciliation_worker.http_client = app.state.shopify_http_client

        response = client.post(f"{PREFIX}/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["skipped"] is False
        assert body["tenants"][0]["shop_domain"] == tenant.shop_domain
        assert body["tenants"][0]["entities"]["orders"]["aborted"] is False

        test_db_session.expire_all()
        assert test_db_session.query(Tenant).filter(Tenant.id == tenant.id).one().last_order_sync is not None

    def test_trigger_sync_while_running(self, app, client):
        app.state.reconciliation_worker.is_running = True
        assert client.post(f"{PREFIX}/sync").json()["skipped"] is True


class TestHealth:
    def test_ok(self, client):
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["database"] == "ok"
        assert body["circuit_breaker"]["state"] == "closed"
        assert body["circuit_breaker"]["dlq_size"] == 0
        assert body["sync_running"] is False

    def test_degraded_when_breaker_open(self, app, client):
        breaker = app.state.resilience.breaker

        async def boom():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError):
            asyncio.run(breaker.call(boom))

        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["circuit_breaker"]["state"] == "open"


class TestAppLifecycle:
    def test_shared_http_client_opened_on_startup_and_closed_on_shutdown(self, app):
        with TestClient(app):
            http_client = app.state.shopify_http_client
            assert isinstance(http_client, httpx.AsyncClient)
            assert app.state.reconciliation_worker.http_client is http_client
            assert not http_client.is_closed

        assert http_client.is_closed
        assert app.state.shopify_http_client is None
