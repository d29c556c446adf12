"""Request ID middleware: generates or propagates X-Request-Id."""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id (and the save's idempotency key, if any) to the log context."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        context = {"request_id": request_id, "method": request.method, "path": request.url.path}
        # Lets one client save be followed across its retries
        idempotency_key = request.headers.get("Idempotency-Key")
        if idempotency_key:
            context["idempotency_key"] = idempotency_key
        client_seq = request.headers.get("X-Client-Sequence")
        if client_seq:
            context["client_seq"] = client_seq
        structlog.contextvars.bind_contextvars(**context)

        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
