"""Client deadline middleware.

A request may carry X-Request-Deadline-Ms; otherwise the configured default
applies. When the deadline passes the handler stops being awaited and the
client gets a 504. Work already committed by the handler stays committed.
"""

import asyncio
from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = structlog.get_logger()

DEADLINE_HEADER = "X-Request-Deadline-Ms"


class DeadlineMiddleware(BaseHTTPMiddleware):
    """Bound every HTTP request by the client's deadline."""

    def __init__(self, app: Any, default_timeout_seconds: float = 30.0) -> None:  # noqa: ANN401
        super().__init__(app)
        self.default_timeout_seconds = default_timeout_seconds

    def _timeout_for(self, request: Request) -> float:
        raw = request.headers.get(DEADLINE_HEADER)
        if raw is None:
            return self.default_timeout_seconds
        try:
            millis = int(raw)
        except ValueError:
            return self.default_timeout_seconds
        if millis <= 0:
            return self.default_timeout_seconds
        return min(millis / 1000.0, self.default_timeout_seconds)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        timeout = self._timeout_for(request)
        try:
            return await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("request_deadline_exceeded", path=request.url.path, timeout_seconds=timeout)
            return JSONResponse(
                status_code=504,
                content={"detail": "Request deadline exceeded", "kind": "timeout"},
            )
