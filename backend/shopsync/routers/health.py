"""Health endpoint: store probe, circuit breaker state and DLQ depth."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..database import get_db, ping
from ..deps import get_resilience
from ..schemas import HealthResponse
from ..services.resilience import CircuitState, ResilienceWrapper

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
def health(
    request: Request,
    db: Session = Depends(get_db),
    resilience: ResilienceWrapper = Depends(get_resilience),
):
    """Report "degraded" when the store is unreachable or the breaker is not closed."""
    try:
        ping(db)
        database = "ok"
    except Exception as e:
        logger.error("[HEALTH] Database check failed: %s", e)
        database = "error"

    breaker = resilience.health()
    worker = getattr(request.app.state, "reconciliation_worker", None)

    degraded = database != "ok" or breaker["state"] != CircuitState.closed.value
    return HealthResponse(
        status="degraded" if degraded else "ok",
        database=database,
        circuit_breaker=breaker,
        sync_running=bool(worker and worker.is_running),
    )
