# api/app/middleware/request_logging.py
"""
Request-level access logging with a per-request id.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        t0 = time.monotonic()
        response = await call_next(request)
        elapsed = (time.monotonic() - t0) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "%s %s → %d (%.0fms) rid=%s",
            request.method, request.url.path, response.status_code, elapsed, request_id,
        )
        return response
