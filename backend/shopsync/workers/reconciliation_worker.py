"""Scheduled full-resync of Shopify data for every active tenant.

WHAT:
    Periodically pulls orders, products and customers changed since each
    tenant's last sync and applies them through the same dispatcher webhooks
    use. Catches whatever webhooks missed (dropped deliveries, downtime,
    dead-lettered events lost on restart).

WHY:
    Webhooks are at-least-once but not guaranteed to arrive; a periodic pull
    bounds how stale the store can get. Upserts make re-applying an already
    delivered change harmless.

SCHEDULE (APScheduler AsyncIOScheduler):
    - Once `SYNC_STARTUP_DELAY_SECONDS` after start, then every
      `SYNC_INTERVAL_MINUTES`
    - max_instances=1, coalesce=True: missed ticks collapse into one run
    - A run requested while another is in progress is skipped, not queued

FAILURE ISOLATION:
    item fails         → logged, next item
    page fetch fails   → remaining pages of that entity type skipped;
                         its last-sync timestamp is left unchanged
    shop keeps failing → that shop's breaker opens; webhooks unaffected
    tenant fails       → logged, next tenant

REFERENCES:
    - shopsync/services/shopify_client.py (paged REST fetch)
    - shopsync/services/dispatcher.py (shared apply path)
    - shopsync/workers/start_worker.py (standalone entrypoint)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session, sessionmaker

from ..database import session_scope
from ..models import EntityTypeEnum, Tenant
from ..services.dispatcher import WebhookDispatcher
from ..services.resilience import CircuitBreaker, CircuitBreakerConfig
from ..services.shopify_client import ShopifyRestClient, parse_call_limit
from ..telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "reconciliation_sync"

# Usage fraction of the call budget above which we slow down
RATE_LIMIT_THRESHOLD = 0.8

# Entity type -> (dispatcher topic, Tenant watermark column)
ENTITY_SYNC = {
    EntityTypeEnum.orders: ("orders/updated", "last_order_sync"),
    EntityTypeEnum.products: ("products/update", "last_product_sync"),
    EntityTypeEnum.customers: ("customers/update", "last_customer_sync"),
}


# =============================================================================
# REPORTS
# =============================================================================

@dataclass
class EntitySyncResult:
    entity: str
    pages: int = 0
    synced: int = 0
    failed: int = 0
    aborted: bool = False
    errors: List[str] = field(default_factory=list)


@dataclass
class TenantSyncResult:
    tenant_id: str
    shop_domain: str
    entities: Dict[str, EntitySyncResult] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class ReconciliationReport:
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    skipped: bool = False
    tenants: List[TenantSyncResult] = field(default_factory=list)


# =============================================================================
# WORKER
# =============================================================================

class ReconciliationWorker:
    """
    Pulls recent Shopify changes for all active tenants.

    Usage:
        worker = ReconciliationWorker(session_factory, settings, breaker_config)
        report = await worker.run_sync()     # one run now
        worker.start()                       # APScheduler interval job
        await worker.stop()

    Page fetches go through one breaker per shop, separate from the webhook
    breaker, so a shop with a revoked token only fails its own pulls.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.breaker_config = breaker_config
        self.http_client = http_client
        self.rate_limit_delay = settings.SYNC_RATE_LIMIT_DELAY_SECONDS
        self.is_running = False
        self._sleep = sleep
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Add the interval job and start the scheduler on the running event loop."""
        if self.scheduler.running:
            return

        first_run = datetime.now(timezone.utc) + timedelta(seconds=self.settings.SYNC_STARTUP_DELAY_SECONDS)
        self.scheduler.add_job(
            self._scheduled_run,
            trigger=IntervalTrigger(minutes=self.settings.SYNC_INTERVAL_MINUTES),
            id=SYNC_JOB_ID,
            name="Reconcile Shopify data for active tenants",
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "[RECONCILE] Worker started - first run in %ss, then every %s minutes",
            self.settings.SYNC_STARTUP_DELAY_SECONDS, self.settings.SYNC_INTERVAL_MINUTES,
        )

    async def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("[RECONCILE] Worker stopped")

    async def _scheduled_run(self) -> None:
        try:
            await self.run_sync()
        except Exception as e:
            logger.exception("[RECONCILE] Run crashed")
            capture_exception(e, extra={"component": "reconciliation_worker"})

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def run_sync(self) -> ReconciliationReport:
        """One reconciliation pass over every active tenant with a token."""
        if self.is_running:
            logger.warning("[RECONCILE] Sync already running, skipping this cycle")
            return ReconciliationReport(skipped=True)

        self.is_running = True
        report = ReconciliationReport(started_at=self._clock())
        logger.info("[RECONCILE] Starting reconciliation sync")

        try:
            with session_scope(self.session_factory) as db:
                tenants = db.query(Tenant).filter(
                    Tenant.active.is_(True),
                    Tenant.access_token.isnot(None),
                ).all()
                logger.info("[RECONCILE] Found %d active tenants to sync", len(tenants))

                for tenant in tenants:
                    tenant_id, shop_domain = tenant.id, tenant.shop_domain
                    try:
                        result = await self.sync_tenant(db, tenant, report.started_at)
                    except Exception as e:
                        db.rollback()
                        logger.exception("[RECONCILE] Failed to sync tenant %s (%s)", tenant_id, shop_domain)
                        capture_exception(e, extra={"tenant_id": str(tenant_id)})
                        result = TenantSyncResult(tenant_id=str(tenant_id), shop_domain=shop_domain, error=str(e))
                    report.tenants.append(result)
        finally:
            self.is_running = False

        report.finished_at = self._clock()
        logger.info(
            "[RECONCILE] Reconciliation sync completed: tenants=%d duration=%.2fs",
            len(report.tenants), (report.finished_at - report.started_at).total_seconds(),
        )
        return report

    def _client_for(self, tenant: Tenant) -> ShopifyRestClient:
        return ShopifyRestClient(
            shop_domain=tenant.shop_domain,
            access_token=tenant.access_token,
            api_version=self.settings.SHOPIFY_API_VERSION,
            http_client=self.http_client,
            sleep=self._sleep,
        )

    async def sync_tenant(self, db: Session, tenant: Tenant, started_at: datetime) -> TenantSyncResult:
        """Sync orders, then products, then customers; each independently."""
        result = TenantSyncResult(tenant_id=str(tenant.id), shop_domain=tenant.shop_domain)
        logger.info("[RECONCILE] Syncing tenant %s", tenant.shop_domain)

        client = self._client_for(tenant)
        for entity in EntityTypeEnum:
            result.entities[entity.value] = await self.sync_entity(db, tenant, client, entity, started_at)

        logger.info("[RECONCILE] Completed sync for tenant %s", result.shop_domain)
        return result

    async def sync_entity(
        self,
        db: Session,
        tenant: Tenant,
        client: ShopifyRestClient,
        entity: EntityTypeEnum,
        started_at: datetime,
    ) -> EntitySyncResult:
        """Page through one entity type and apply every item.

        The watermark column is set to `started_at` only if every page was
        fetched; a page failure leaves it so the window is retried next run.
        """
        topic, watermark_column = ENTITY_SYNC[entity]
        tenant_id, shop_domain = tenant.id, tenant.shop_domain
        result = EntitySyncResult(entity=entity.value)
        dispatcher = WebhookDispatcher(db)

        url: Optional[str] = client.build_list_url(entity.value, getattr(tenant, watermark_column))

        while url:
            try:
                page = await self._fetch_page(client, url, entity.value)
            except Exception as e:
                result.aborted = True
                result.errors.append(f"page {result.pages + 1}: {e}")
                logger.error("[RECONCILE] Error fetching %s for %s: %s", entity.value, shop_domain, e)
                break

            result.pages += 1
            logger.info("[RECONCILE] Processing %d %s for %s", len(page.items), entity.value, shop_domain)

            for item in page.items:
                try:
                    outcome = await dispatcher.process(topic, item, tenant_id)
                except Exception as e:
                    result.failed += 1
                    result.errors.append(f"{entity.value} {item.get('id')}: {e}")
                    logger.error("[RECONCILE] Failed to process %s %s: %s", entity.value, item.get("id"), e)
                    continue
                if outcome.success:
                    result.synced += 1

            url = page.next_url
            if url:
                await self.handle_rate_limit(page.call_limit)

        if not result.aborted:
            tenant = db.query(Tenant).filter(Tenant.id == tenant_id).one()
            setattr(tenant, watermark_column, started_at)
            db.commit()

        logger.info(
            "[RECONCILE] Synced %d %s for %s (failed=%d, pages=%d%s)",
            result.synced, entity.value, shop_domain, result.failed, result.pages,
            ", aborted" if result.aborted else "",
        )
        return result

    def breaker_for(self, shop_domain: str) -> Optional[CircuitBreaker]:
        """Per-shop breaker, created on first use; None when breakers are off."""
        if self.breaker_config is None:
            return None
        breaker = self._breakers.get(shop_domain)
        if breaker is None:
            breaker = CircuitBreaker(self.breaker_config, name=f"shopify-rest:{shop_domain}")
            self._breakers[shop_domain] = breaker
        return breaker

    async def _fetch_page(self, client: ShopifyRestClient, url: str, resource: str):
        breaker = self.breaker_for(client.shop_domain)
        if breaker is None:
            return await client.fetch_page(url, resource)
        return await breaker.call(lambda: client.fetch_page(url, resource))

    async def handle_rate_limit(self, call_limit_header: Optional[str]) -> float:
        """Sleep proportionally to usage once above 80% of the call budget.

        Returns:
            Seconds slept (0 when under the threshold)
        """
        usage = parse_call_limit(call_limit_header)
        if usage is None or usage <= RATE_LIMIT_THRESHOLD:
            return 0.0

        delay = self.rate_limit_delay * usage
        logger.info("[RECONCILE] Call budget at %.0f%%, waiting %.2fs", usage * 100, delay)
        await self._sleep(delay)
        return delay
