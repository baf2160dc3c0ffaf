import time
import uuid
import random
import logging
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from . import config
from .logging_config import trace_id_var
from .services.prometheus_metrics import prometheus_metrics

logger = logging.getLogger("api.http")


class TracingMiddleware(BaseHTTPMiddleware):
    """Request tracing, structured access logging and request metrics"""

    def __init__(self, app: ASGIApp, exclude_paths=None, sample_rate: float = None):
        super().__init__(app)
        self.exclude_paths = set(exclude_paths if exclude_paths is not None else config.LOG_EXCLUDE_PATHS)
        self.sample_rate = config.LOG_SAMPLE_RATE if sample_rate is None else sample_rate

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Generate or reuse trace ID
        trace_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = trace_id_var.set(trace_id)

        client_ip = request.client.host if request.client else "unknown"
        start_time = time.time()

        try:
            response = await call_next(request)
            latency_ms = round((time.time() - start_time) * 1000, 2)

            self._log_request(
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                latency_ms=latency_ms,
                client_ip=client_ip,
            )
            prometheus_metrics.increment_requests(response.status_code)

            response.headers["X-Request-ID"] = trace_id
            return response

        except Exception as e:
            latency_ms = round((time.time() - start_time) * 1000, 2)
            logger.error(f"Request failed: {str(e)}", extra={
                "method": request.method,
                "path": request.url.path,
                "status": 500,
                "latency_ms": latency_ms,
                "client_ip": client_ip,
            })
            prometheus_metrics.increment_requests(500)
            raise
        finally:
            trace_id_var.reset(token)

    def _log_request(self, method: str, path: str, status: int, latency_ms: float, client_ip: str):
        """Log HTTP request with structured data and sampling"""
        if path in self.exclude_paths:
            return

        fields = {
            "method": method,
            "path": path,
            "status": status,
            "latency_ms": latency_ms,
            "client_ip": client_ip,
        }

        # Always log errors
        if status >= 400:
            level = logging.ERROR if status >= 500 else logging.WARNING
            logger.log(level, "HTTP Request", extra=fields)
            return

        # Sample successful requests
        if random.random() > self.sample_rate:
            return
        logger.info("HTTP Request", extra=fields)
