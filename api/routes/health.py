"""Health check and metrics endpoints."""

from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from api.services.dependencies import get_service
from core.observability.metrics import get_metrics
from value_resolver import db
from value_resolver.service import ValueResolverService


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(service: ValueResolverService = Depends(get_service)) -> HealthResponse:
    """Health check endpoint."""
    try:
        conn = db.connect(service.settings.db_path)
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            conn.close()
        storage = "up"
    except Exception:
        storage = "down"

    return HealthResponse(
        status="healthy" if storage == "up" else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version="1.0.0",
        services={
            "api": "up",
            "storage": storage,
            "sources": ",".join(service.sources.names()) or "none",
        }
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness probe for Kubernetes."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check(response: Response) -> Dict[str, str]:
    """Liveness probe for Kubernetes."""
    return {"status": "alive"}


@router.get("/metrics")
async def metrics_summary() -> Dict[str, Any]:
    """Resolution, refresh and confirmation counters plus timings."""
    return get_metrics().get_summary()
