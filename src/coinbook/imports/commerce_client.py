"""Commerce platform Admin API client.

Every request first takes a token from the process-wide bucket. Failures
map onto the typed errors the job worker understands: 429 becomes
RateLimited, 5xx and transport errors become TransientError, anything else
that is not 2xx is a ValidationFailed that will not be retried.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from coinbook.config import get_settings
from coinbook.errors import RateLimited, TransientError, ValidationFailed
from coinbook.imports.token_bucket import TokenBucket, get_commerce_bucket

logger = structlog.get_logger()

API_VERSION = "2024-01"
TOKEN_HEADER = "X-Commerce-Access-Token"


@dataclass
class Page:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_url: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_url is not None


class CommerceClient:
    """Thin async client over httpx for customers and orders."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        bucket: TokenBucket | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 20.0,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.commerce_api_url).rstrip("/")
        self.token = token if token is not None else settings.commerce_api_token
        self.page_size = settings.commerce_page_size
        self.bucket = bucket or get_commerce_bucket()
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/admin/api/{API_VERSION}",
            headers={TOKEN_HEADER: self.token, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.token)

    async def __aenter__(self) -> CommerceClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        if not self.configured:
            msg = "Commerce API URL and token are required"
            raise ValidationFailed(msg, field="commerce_api_url")
        await self.bucket.acquire()
        try:
            response = await self._client.get(url, params=params)
        except httpx.TransportError as exc:
            msg = f"Commerce API unreachable: {exc}"
            raise TransientError(msg) from exc

        if response.status_code == 429:
            retry_after = _retry_after(response)
            self.bucket.drain(retry_after)
            logger.warning("commerce_rate_limited", url=url, retry_after=retry_after)
            msg = "Commerce API rate limit hit"
            raise RateLimited(msg, retry_after=retry_after)
        if response.status_code >= 500:
            msg = f"Commerce API error {response.status_code}"
            raise TransientError(msg, status=response.status_code)
        if response.status_code >= 400:
            msg = f"Commerce API rejected request ({response.status_code})"
            raise ValidationFailed(msg, status=response.status_code)
        return response

    async def _page(self, url: str, key: str, params: dict[str, Any] | None) -> Page:
        response = await self._get(url, params=params)
        next_link = response.links.get("next", {}).get("url")
        return Page(items=list(response.json().get(key, [])), next_url=next_link)

    async def customer_page(self, cursor: str | None = None) -> Page:
        """One page of customers. ``cursor`` is the next-page URL from the previous page."""
        if cursor:
            return await self._page(cursor, "customers", None)
        return await self._page("/customers.json", "customers", {"limit": self.page_size})

    async def customer_count(self) -> int:
        response = await self._get("/customers/count.json")
        return int(response.json().get("count", 0))

    async def customer_orders(self, customer_id: str) -> list[dict[str, Any]]:
        """Every order for one customer, following pagination to the end."""
        orders: list[dict[str, Any]] = []
        page = await self._page(
            "/orders.json",
            "orders",
            {"customer_id": customer_id, "status": "any", "limit": self.page_size},
        )
        orders.extend(page.items)
        while page.has_more:
            page = await self._page(page.next_url, "orders", None)  # type: ignore[arg-type]
            orders.extend(page.items)
        return orders


def _retry_after(response: httpx.Response) -> float:
    try:
        return max(0.5, float(response.headers.get("Retry-After", "2")))
    except ValueError:
        return 2.0
