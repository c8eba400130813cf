"""FastAPI middleware for request tracking and logging."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Requests slower than this are logged as warnings
SLOW_REQUEST_SEC = 30.0


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID and timing to each request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Add request ID to request and response headers."""
        request_id = request.headers.get("X-Request-ID") or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id

        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{process_time:.3f}"

        if process_time > SLOW_REQUEST_SEC:
            logger.warning(
                f"Slow request [{request_id}]: {request.method} {request.url.path} "
                f"took {process_time:.1f}s",
                extra={"request_id": request_id},
            )
        return response
