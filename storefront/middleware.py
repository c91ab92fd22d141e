"""
Middleware for FastAPI: request logging and latency.
"""
import logging
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.log import hash_identifier

logger = logging.getLogger(__name__)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Logs each request and response with hashed session identifiers"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        hashed_session_id = hash_identifier(request.headers.get("X-Session-ID"))

        # Log request (no PII)
        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "hashed_session_id": hashed_session_id,
                "remote_addr": request.client.host if request.client else None
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Error: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "hashed_session_id": hashed_session_id
                },
                exc_info=True
            )
            # Re-raise so the app's exception handlers still run
            raise

        latency_ms = (time.time() - start_time) * 1000

        logger.info(
            f"Response: {request.method} {request.url.path} {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": round(latency_ms, 2),
                "hashed_session_id": hashed_session_id
            }
        )

        response.headers["X-Response-Time-Ms"] = f"{latency_ms:.2f}"

        if hasattr(request.state, "metric_name"):
            logger.info(
                f"Metric: {request.state.metric_name}",
                extra={
                    "metric_name": request.state.metric_name,
                    "value": getattr(request.state, "metric_value", 1),
                    "latency_ms": round(latency_ms, 2)
                }
            )

        return response
