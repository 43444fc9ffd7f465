"""Unified API response envelope.

Every endpoint, success or error, answers with:
{
    "code": 0,           // 0 = success, otherwise the AppError code
    "message": "success",
    "data": { ... },     // null on error
    "timestamp": "...",
    "request_id": "..."  // same id as the x-request-id response header
}
Amounts inside ``data`` are integer minor units.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from pydantic import BaseModel, Field


class ApiResponse(BaseModel):
    code: int = 0
    message: str = "success"
    data: Any = None
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    request_id: str = Field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")


def _with_request_id(resp: ApiResponse, request: Request | None) -> ApiResponse:
    if request is not None:
        # Set by RequestLogMiddleware; absent when a handler runs outside the stack
        resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp


def success_response(data: Any = None, request: Request | None = None) -> ApiResponse:
    return _with_request_id(ApiResponse(code=0, message="success", data=data), request)


def error_response(
    code: int, message: str, request: Request | None = None, data: Any = None
) -> ApiResponse:
    return _with_request_id(ApiResponse(code=code, message=message, data=data), request)
