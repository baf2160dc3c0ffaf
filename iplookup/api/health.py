"""
Documentation, liveness and metrics endpoints - no authentication required
"""

import time
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from .. import config
from ..geo.store import DatabaseStore
from ..services.prometheus_metrics import prometheus_metrics
from .deps import get_store

router = APIRouter()


@router.get("/", tags=["docs"])
def root(store: DatabaseStore = Depends(get_store)):
    return {
        "name": config.APP_NAME,
        "version": config.API_VERSION,
        "description": "API service for retrieving information about IP addresses using local databases",
        "endpoints": {
            "/api/lookup/:ip": "GET - Look up information for a specific IP address",
            "/admin/database/status": "GET - Database status",
            "/ping": "GET - Liveness check",
            "/": "GET - API documentation",
        },
        "example": "/api/lookup/8.8.8.8",
        "databaseStatus": {name: d["status"] for name, d in store.status().items()},
    }


@router.get("/ping", tags=["health"])
def ping(request: Request):
    started = getattr(request.app.state, "started_at", time.time())
    return {
        "status": "ok",
        "message": "Server is running",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "uptime": f"{int(time.time() - started)} seconds",
    }


@router.get("/metrics/prometheus", tags=["metrics"], summary="Prometheus metrics")
async def get_prometheus_metrics() -> Response:
    """
    Get metrics in Prometheus exposition format.
    """
    try:
        return PlainTextResponse(
            content=prometheus_metrics.get_metrics(),
            media_type=prometheus_metrics.get_content_type()
        )
    except Exception as e:
        logging.error(f"Failed to get metrics: {e}")
        return PlainTextResponse(
            content="# Metrics temporarily unavailable\n",
            media_type="text/plain"
        )
