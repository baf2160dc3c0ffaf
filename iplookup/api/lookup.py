"""
IP lookup endpoint
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Request

from .. import config
from ..errors import GeoLookupError, InternalError
from ..geo.lookup import LookupEngine
from ..schemas.geo import ErrorResponse
from ..services.prometheus_metrics import prometheus_metrics
from .deps import get_engine

logger = logging.getLogger("api.lookup")

router = APIRouter(tags=["lookup"])

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid IPv4 address"},
    500: {"model": ErrorResponse, "description": "Lookup failed"},
    503: {"model": ErrorResponse, "description": "No database loaded"},
}


def get_client_ip(request: Request, trust_proxy: bool = False) -> str:
    """Caller's address, honouring X-Forwarded-For only behind a trusted proxy"""
    ip = None
    if trust_proxy:
        xff = request.headers.get("x-forwarded-for")
        if xff:
            ip = xff.split(",")[0].strip()
    if not ip:
        ip = request.client.host if request.client else ""
    # IPv4-mapped IPv6 from dual-stack listeners
    if ip.startswith("::ffff:"):
        ip = ip[len("::ffff:"):]
    return ip


@router.get("/api/lookup", responses=_ERRORS, summary="Look up the caller's own IP address")
@router.get("/api/lookup/{ip}", responses=_ERRORS, summary="Look up an IPv4 address")
def lookup(request: Request, ip: Optional[str] = None, engine: LookupEngine = Depends(get_engine)):
    address = ip or get_client_ip(request, trust_proxy=config.TRUST_PROXY)
    try:
        return engine.lookup(address).to_response()
    except GeoLookupError:
        raise
    except Exception as e:
        logger.exception(f"Error looking up IP {address}")
        prometheus_metrics.increment_lookups("error")
        raise InternalError(str(e)) from e
