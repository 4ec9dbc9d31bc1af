"""Shopify webhook subscription service.

WHAT: Manages webhook subscriptions for a tenant's Shopify store
WHY: Every topic the dispatcher handles must be subscribed on the platform,
     pointing at this service's public webhook URL
REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/latest/resources/webhook
    - shopsync/services/dispatcher.py (WebhookTopic: the topics we subscribe)
"""

import logging
from typing import Any, Dict, List, Optional

from ..errors import ShopifyAPIError, ValidationError
from .dispatcher import WebhookTopic
from .shopify_client import ShopifyRestClient

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/shopify"


def callback_address(base_url: Optional[str]) -> str:
    """Public callback URL for Shopify; Shopify requires HTTPS."""
    base_url = (base_url or "").rstrip("/")
    if not base_url:
        raise ValidationError("WEBHOOK_BASE_URL is not configured")
    if base_url.startswith("http://"):
        base_url = base_url.replace("http://", "https://", 1)
        logger.info(f"[WEBHOOK_SUB] Upgraded to HTTPS: {base_url}")
    return f"{base_url}{WEBHOOK_PATH}"


async def register_webhooks(client: ShopifyRestClient, base_url: Optional[str]) -> List[Dict[str, Any]]:
    """Subscribe every handled topic that is not subscribed yet.

    An existing subscription for a topic counts as success ("exists"); one
    topic failing does not stop the others.

    Returns:
        One result per topic: {"topic", "status": created|exists|failed, "webhookId"|"error"}
    """
    address = callback_address(base_url)
    existing = {webhook.get("topic"): webhook for webhook in await client.list_webhooks()}

    results: List[Dict[str, Any]] = []
    for topic in WebhookTopic:
        if topic.value in existing:
            logger.info(f"[WEBHOOK_SUB] {topic.value} already exists for {client.shop_domain}")
            results.append({"topic": topic.value, "status": "exists", "webhookId": existing[topic.value].get("id")})
            continue

        try:
            webhook = await client.create_webhook(topic.value, address)
        except ShopifyAPIError as e:
            logger.error(f"[WEBHOOK_SUB] Failed to subscribe {topic.value} for {client.shop_domain}: {e}")
            results.append({"topic": topic.value, "status": "failed", "error": str(e)})
            continue

        logger.info(f"[WEBHOOK_SUB] {topic.value} registered for {client.shop_domain}")
        results.append({"topic": topic.value, "status": "created", "webhookId": webhook.get("id")})

    return results


async def get_webhooks(client: ShopifyRestClient) -> List[Dict[str, Any]]:
    return await client.list_webhooks()


async def delete_all_webhooks(client: ShopifyRestClient) -> List[Dict[str, Any]]:
    """Delete every subscription on the shop; failures are reported per webhook."""
    results: List[Dict[str, Any]] = []
    for webhook in await client.list_webhooks():
        webhook_id = webhook.get("id")
        try:
            await client.delete_webhook(webhook_id)
        except ShopifyAPIError as e:
            logger.error(f"[WEBHOOK_SUB] Failed to delete webhook {webhook_id}: {e}")
            results.append({"webhookId": webhook_id, "topic": webhook.get("topic"), "status": "failed", "error": str(e)})
            continue
        results.append({"webhookId": webhook_id, "topic": webhook.get("topic"), "status": "deleted"})
    return results
