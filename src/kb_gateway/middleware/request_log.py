"""Request logging middleware.

Assigns each request an id (or adopts the caller's ``x-request-id`` so the
storefront and gateway callbacks can be correlated), stores it on
``request.state`` for the ApiResponse envelope and echoes it back as a header.

Log format:
    INFO [POST] /api/v1/escrow/confirm -> 200 (23ms) req_a1b2c3d4e5f6
"""

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("kb.request")

_INBOUND_ID = re.compile(r"^[A-Za-z0-9_.:-]{8,64}$")
_QUIET_PATHS = frozenset({"/health"})


def _request_id(request: Request) -> str:
    inbound = request.headers.get("x-request-id", "")
    if _INBOUND_ID.match(inbound):
        return inbound
    return f"req_{uuid.uuid4().hex[:12]}"


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.request_id = _request_id(request)

        start = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000

        response.headers["x-request-id"] = request.state.request_id
        if response.status_code >= 500:
            level = logging.WARNING
        elif request.url.path in _QUIET_PATHS:
            level = logging.DEBUG
        else:
            level = logging.INFO
        logger.log(
            level,
            "[%s] %s -> %d (%.0fms) %s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.state.request_id,
        )
        return response
