"""
Request tracing middleware.

For each request a request ID is taken from the X-Request-ID header (or
generated), stored in the logging context and on ``request.state``, echoed
back in the response headers and used to log request start and completion.
"""

import time
import logging
from typing import Callable
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from worknote_rag.core.logging_config import (
    generate_request_id,
    set_request_id,
    get_logger,
)

logger = get_logger(__name__)


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Adds a request ID to every request and logs its lifecycle."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        set_request_id(request_id)
        request.state.request_id = request_id

        start_time = time.time()
        method = request.method
        path = request.url.path

        logger.debug(
            f"Request started: {method} {path}",
            extra={"event": "request_start", "method": method, "path": path}
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request failed: {method} {path} - {str(e)[:200]}",
                extra={
                    "event": "request_error",
                    "method": method,
                    "path": path,
                    "duration_ms": round(duration_ms, 2),
                    "error_type": type(e).__name__,
                },
                exc_info=True
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id

        log_level = logging.INFO
        if response.status_code >= 500:
            log_level = logging.ERROR
        elif response.status_code >= 400:
            log_level = logging.WARNING

        logger.log(
            log_level,
            f"Request completed: {method} {path} -> {response.status_code} ({duration_ms:.2f}ms)",
            extra={
                "event": "request_complete",
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            }
        )
        return response
