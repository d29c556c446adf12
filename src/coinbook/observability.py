"""Bug reporting to the optional observability sink."""

from __future__ import annotations

import traceback
from typing import Any

import httpx
import structlog

from coinbook.config import get_settings

logger = structlog.get_logger()


async def report_bug(exc: BaseException, **context: Any) -> None:  # noqa: ANN401
    """Log a bug with its stack and forward it to the observability endpoint if one is configured.

    Delivery to the sink is best-effort; the log line is always emitted.
    """
    logger.error("bug_reported", error=str(exc), error_type=type(exc).__name__, exc_info=exc, **context)

    url = get_settings().observability_url
    if not url:
        return

    body = {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        "context": {k: str(v) for k, v in context.items()},
    }
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(url, json=body)
    except httpx.HTTPError as send_exc:
        logger.warning("observability_send_failed", error=str(send_exc))
