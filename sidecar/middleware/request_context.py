"""
RequestContext Middleware - request id, peer address and size limit for every request.

Adds to request.state:
- request_id: UUID for tracing this request (also returned as X-Request-ID)
- peer_address: address of the directly connected client

The request id is bound into structlog's context so every log line emitted
while handling the request carries it.
"""

import uuid

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from sidecar.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, max_request_bytes: int | None = None):
        super().__init__(app)
        self.max_request_bytes = max_request_bytes

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.peer_address = request.client.host if request.client else None

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.debug(
            "Request started",
            method=request.method,
            path=request.url.path,
            peer_address=request.state.peer_address,
        )

        too_large = self._content_length_exceeded(request)
        if too_large:
            response = JSONResponse(
                status_code=413,
                content={
                    "error": {
                        "code": "payload_too_large",
                        "message": f"Request body exceeds {self.max_request_bytes} bytes",
                        "requestId": request_id,
                    }
                },
            )
        else:
            response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def _content_length_exceeded(self, request: Request) -> bool:
        if not self.max_request_bytes:
            return False
        raw = request.headers.get("content-length")
        if not raw:
            return False
        try:
            return int(raw) > self.max_request_bytes
        except ValueError:
            return False
