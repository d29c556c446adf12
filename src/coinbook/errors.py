"""Typed failures raised by core components.

Boundary layers translate these into transport responses: the HTTP error
handler into JSON bodies, the job worker into ack/nack/dead-letter decisions.
"""

from __future__ import annotations

from typing import Any


class CoinbookError(Exception):
    """Base class for all domain failures."""

    kind = "bug"
    status_code = 500
    retriable = False

    def __init__(self, message: str, **details: Any) -> None:  # noqa: ANN401
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "kind": self.kind, **self.details}


class ValidationFailed(CoinbookError):
    """Input rejected; never retried."""

    kind = "validation"
    status_code = 422


class IneligibleProduct(ValidationFailed):
    """One or more products cannot be ranked by this user."""

    kind = "ineligible-product"

    def __init__(self, product_ids: list[int]) -> None:
        super().__init__("Products are not rankable by this user", product_ids=sorted(product_ids))
        self.product_ids = sorted(product_ids)


class NotAuthorized(CoinbookError):
    kind = "not-authorized"
    status_code = 401


class Forbidden(NotAuthorized):
    status_code = 403


class IdempotencyConflict(CoinbookError):
    """Idempotency key already used with a different payload."""

    kind = "conflict"
    status_code = 409


class TransientError(CoinbookError):
    """Network blip, deadlock or upstream 5xx. Safe to retry."""

    kind = "transient"
    status_code = 503
    retriable = True


class RateLimited(TransientError):
    """External API asked us to slow down."""

    kind = "rate-limited"
    status_code = 429

    def __init__(self, message: str, retry_after: float = 1.0) -> None:
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class InvariantViolation(CoinbookError):
    """A condition that should be impossible. Always logged with a stack and reported."""

    kind = "bug"
    status_code = 500
