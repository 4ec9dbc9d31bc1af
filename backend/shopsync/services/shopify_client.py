"""Shopify REST Admin API client.

WHAT:
    Wrapper for the Shopify Admin REST API with:
    - Authentication handling (X-Shopify-Access-Token)
    - Link-header pagination for list endpoints
    - 429 handling via Retry-After, retries for transient errors
    - Webhook subscription list/create/delete

WHY:
    Encapsulates all Shopify API interaction for the reconciliation worker and
    the webhook subscription service. REST list endpoints return the same JSON
    shapes as webhook payloads, so pulled items go through the same dispatcher.

REFERENCES:
    - REST Admin API: https://shopify.dev/docs/api/admin-rest
    - Pagination: https://shopify.dev/docs/api/usage/pagination-rest
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from ..errors import ShopifyAPIError

logger = logging.getLogger(__name__)

# Default API version
DEFAULT_API_VERSION = "2025-01"

# Request timeout for Shopify REST calls
SHOPIFY_HTTP_TIMEOUT_SECONDS = 30.0

# Largest page size the REST list endpoints accept
PAGE_LIMIT = 250

# Per-resource fixed query parameters
LIST_PARAMS: Dict[str, Dict[str, Any]] = {
    "orders": {"status": "any", "limit": PAGE_LIMIT},
    "products": {"limit": PAGE_LIMIT},
    "customers": {"limit": PAGE_LIMIT},
}


@dataclass
class PageResult:
    """One page of a list endpoint."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_url: Optional[str] = None
    call_limit: Optional[str] = None  # X-Shopify-Shop-Api-Call-Limit, e.g. "32/40"


def format_timestamp(value: datetime) -> str:
    """ISO-8601 for query parameters; naive datetimes are UTC."""
    if value.tzinfo is None:
        return value.replace(microsecond=0).isoformat() + "Z"
    return value.replace(microsecond=0).isoformat()


def parse_next_link(link_header: Optional[str]) -> Optional[str]:
    """Extract the rel="next" URL from a Link header.

    Example:
        '<https://s/admin/api/2025-01/orders.json?page_info=abc>; rel="next"'
        -> 'https://s/admin/api/2025-01/orders.json?page_info=abc'
    """
    if not link_header:
        return None
    for part in link_header.split(","):
        sections = part.split(";")
        if len(sections) < 2:
            continue
        if any(section.strip().replace(" ", "") in ('rel="next"', "rel=next") for section in sections[1:]):
            return sections[0].strip().strip("<>")
    return None


def parse_call_limit(header: Optional[str]) -> Optional[float]:
    """Usage fraction from "used/limit" (e.g. "32/40" -> 0.8), None if absent or malformed."""
    if not header:
        return None
    try:
        used, limit = header.split("/", 1)
        used_n, limit_n = float(used), float(limit)
    except ValueError:
        return None
    if limit_n <= 0:
        return None
    return used_n / limit_n


class ShopifyRestClient:
    """REST client for one shop.

    WHAT: Handles communication with Shopify's REST Admin API for one tenant
    WHY: Centralized API access with pagination and error handling

    Usage:
        client = ShopifyRestClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        url = client.build_list_url("orders", updated_at_min=tenant.last_order_sync)
        page = await client.fetch_page(url, "orders")
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        http_client: Optional[httpx.AsyncClient] = None,
        retries: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize Shopify client.

        Args:
            shop_domain: Shopify store domain (e.g., "mystore.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use (default: 2025-01)
            http_client: Shared AsyncClient (tests pass one with a MockTransport)
            retries: Attempts per request for 429/5xx/network errors
            sleep: Awaitable sleep used between retries
        """
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self.retries = max(retries, 1)
        self._http_client = http_client
        self._sleep = sleep

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=SHOPIFY_HTTP_TIMEOUT_SECONDS) as client:
            yield client

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

    async def request(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one request with retry on 429, 5xx and network errors.

        Raises:
            ShopifyAPIError: Non-retryable status, or still failing after all retries
        """
        last_error: Optional[str] = None

        for attempt in range(self.retries):
            try:
                async with self._client() as client:
                    response = await client.request(method, url, json=json, headers=self.headers)
            except httpx.RequestError as e:
                last_error = str(e)
                logger.warning(
                    f"[SHOPIFY_CLIENT] Request error: {e} (attempt {attempt + 1}/{self.retries})"
                )
                if attempt < self.retries - 1:
                    await self._sleep(1 * (attempt + 1))
                continue

            if response.status_code == 429:
                retry_after = float(response.headers.get("Retry-After", 2))
                last_error = "rate limited (429)"
                logger.warning(
                    f"[SHOPIFY_CLIENT] Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{self.retries})"
                )
                if attempt < self.retries - 1:
                    await self._sleep(retry_after)
                continue

            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    f"[SHOPIFY_CLIENT] HTTP error {response.status_code} (attempt {attempt + 1}/{self.retries})"
                )
                if attempt < self.retries - 1:
                    await self._sleep(1 * (attempt + 1))
                continue

            if response.status_code >= 400:
                raise ShopifyAPIError(
                    f"Shopify API error: {response.status_code} {response.reason_phrase}",
                    status_code=response.status_code,
                    errors=[response.text],
                )

            return response

        raise ShopifyAPIError(f"Failed after {self.retries} attempts: {last_error}")

    # =========================================================================
    # LIST ENDPOINTS
    # =========================================================================

    def build_list_url(self, resource: str, updated_at_min: Optional[datetime] = None) -> str:
        """First-page URL for `resource` ("orders", "products", "customers")."""
        params = dict(LIST_PARAMS[resource])
        if updated_at_min is not None:
            params["updated_at_min"] = format_timestamp(updated_at_min)
        return f"{self.base_url}/{resource}.json?{urlencode(params)}"

    async def fetch_page(self, url: str, resource: str) -> PageResult:
        """Fetch one page and extract items, next-page URL and call-limit header."""
        response = await self.request("GET", url)
        try:
            data = response.json()
        except ValueError:
            raise ShopifyAPIError(f"Invalid JSON from {resource} endpoint", status_code=response.status_code)

        return PageResult(
            items=data.get(resource) or [],
            next_url=parse_next_link(response.headers.get("Link")),
            call_limit=response.headers.get("X-Shopify-Shop-Api-Call-Limit"),
        )

    # =========================================================================
    # WEBHOOK SUBSCRIPTIONS
    # =========================================================================

    async def list_webhooks(self) -> List[Dict[str, Any]]:
        response = await self.request("GET", f"{self.base_url}/webhooks.json")
        return response.json().get("webhooks") or []

    async def create_webhook(self, topic: str, address: str) -> Dict[str, Any]:
        response = await self.request(
            "POST",
            f"{self.base_url}/webhooks.json",
            json={"webhook": {"topic": topic, "address": address, "format": "json"}},
        )
        return response.json().get("webhook") or {}

    async def delete_webhook(self, webhook_id: Any) -> None:
        await self.request("DELETE", f"{self.base_url}/webhooks/{webhook_id}.json")
