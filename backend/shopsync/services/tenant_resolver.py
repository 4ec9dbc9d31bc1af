"""Resolve the tenant a webhook belongs to.

WHAT: Maps X-Shopify-Shop-Domain to a Tenant row
WHY: Every downstream write is tenant scoped; inactive tenants only accept
     the uninstall lifecycle event
"""

import logging

from sqlalchemy.orm import Session

from ..errors import InactiveTenantError, NotFoundError
from ..models import Tenant

logger = logging.getLogger(__name__)

# Topics that must reach an inactive tenant
LIFECYCLE_TOPICS = frozenset({"app/uninstalled"})


def get_tenant_by_domain(db: Session, shop_domain: str):
    return db.query(Tenant).filter(Tenant.shop_domain == shop_domain).first()


def resolve_tenant(db: Session, shop_domain: str, topic: str) -> Tenant:
    """Return the tenant for `shop_domain`.

    Raises:
        NotFoundError: No tenant owns this shop domain
        InactiveTenantError: Tenant is inactive and `topic` is not a lifecycle topic
    """
    tenant = get_tenant_by_domain(db, shop_domain)
    if tenant is None:
        logger.warning("[WEBHOOK] Tenant not found for shop %s", shop_domain)
        raise NotFoundError("Tenant not found")

    ensure_accepts(tenant, topic)
    return tenant


def ensure_accepts(tenant: Tenant, topic: str) -> None:
    """Raise InactiveTenantError unless `tenant` may receive `topic`.

    Shared by live delivery and the operator retry paths.
    """
    if not tenant.active and topic not in LIFECYCLE_TOPICS:
        logger.info("[WEBHOOK] Rejecting %s for inactive tenant %s", topic, tenant.id)
        raise InactiveTenantError("Tenant is inactive")
