"""Request middleware: correlation IDs and request timing."""

import logging
import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from shared.logging_config import correlation_scope

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the caller's correlation ID (or a fresh one) for the lifetime of the request"""

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())

        with correlation_scope(correlation_id):
            started = time.perf_counter()
            logging.info("Incoming request", extra={"method": request.method, "path": request.url.path})

            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id

            logging.info(
                "Outgoing response",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                }
            )
            return response
