"""
Database administration endpoints: status, on-demand refresh and reload
"""

import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException

from ..geo.store import DatabaseStore
from ..geo.types import DatabaseType
from ..schemas.geo import DatabaseStatusResponse, RefreshRequest
from ..services.refresh_jobs import RefreshTrigger
from .deps import get_refresh_trigger, get_store

logger = logging.getLogger("api.admin")

router = APIRouter(prefix="/admin/database", tags=["admin"])


@router.get("/status", response_model=DatabaseStatusResponse)
def database_status(store: DatabaseStore = Depends(get_store),
                    trigger: RefreshTrigger = Depends(get_refresh_trigger)):
    details = store.status()
    return {
        "status": {name: d["status"] for name, d in details.items()},
        "details": details,
        "refresh": trigger.status(),
    }


@router.post("/refresh", status_code=202)
def refresh_databases(background_tasks: BackgroundTasks,
                      req: Optional[RefreshRequest] = Body(None),
                      trigger: RefreshTrigger = Depends(get_refresh_trigger)) -> Dict[str, Any]:
    """Start a refresh cycle in the background"""
    try:
        types = DatabaseType.parse(req.types) if req and req.types else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Unknown database type: {e}")

    if not trigger.try_start():
        raise HTTPException(status_code=409, detail="A database refresh is already running")

    background_tasks.add_task(trigger.run, types)
    logger.info("Database refresh requested", extra={
        "component": "api.admin",
        "databases": [t.value for t in types] if types else "all",
    })
    return {"status": "accepted", "databases": [t.value for t in types] if types else "all"}


@router.post("/reload")
def reload_databases(store: DatabaseStore = Depends(get_store)) -> Dict[str, Any]:
    """Republish database files replaced on disk since they were loaded"""
    return {"results": store.load_from_disk(only_changed=True)}
