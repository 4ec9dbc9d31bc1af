"""Shopify webhook ingestion endpoint.

WHAT: Receives Shopify deliveries and runs the ingestion pipeline
WHY: Thin HTTP wrapper; every decision lives in services/ingestion.py

Mounted at:
    POST /api/webhooks
    POST /api/webhooks/shopify   (address registered with Shopify)
    POST /webhooks/shopify       (legacy alias)

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks
    - shopsync/services/ingestion.py
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_app_settings, get_resilience
from ..errors import IngestionError
from ..schemas import WebhookResponse
from ..services.ingestion import WebhookIngestor
from ..services.resilience import ResilienceWrapper

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])


async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    resilience: ResilienceWrapper = Depends(get_resilience),
):
    """Verify, deduplicate and apply one Shopify delivery.

    The raw body is read before any parsing so the HMAC covers the exact
    bytes Shopify signed.
    """
    raw_body = await request.body()
    ingestor = WebhookIngestor(db, settings, resilience)

    try:
        result = await ingestor.ingest(raw_body, request.headers)
    except IngestionError as e:
        body = {"error": e.message}
        if e.status_code >= 500:
            body["success"] = False
        return JSONResponse(status_code=e.status_code, content=body)

    return JSONResponse(
        status_code=result.status_code,
        content=WebhookResponse(**result.body()).model_dump(exclude_none=True),
    )


for path in ("/api/webhooks", "/api/webhooks/shopify", "/webhooks/shopify"):
    router.add_api_route(
        path,
        receive_webhook,
        methods=["POST"],
        response_model=WebhookResponse,
        summary="Receive Shopify webhook",
    )
