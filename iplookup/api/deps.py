"""
Request-scoped access to the components owned by the application
"""

from fastapi import Request

from ..geo.lookup import LookupEngine
from ..geo.store import DatabaseStore
from ..services.refresh_jobs import RefreshTrigger


def get_store(request: Request) -> DatabaseStore:
    return request.app.state.store


def get_engine(request: Request) -> LookupEngine:
    return request.app.state.engine


def get_refresh_trigger(request: Request) -> RefreshTrigger:
    return request.app.state.refresh_trigger
