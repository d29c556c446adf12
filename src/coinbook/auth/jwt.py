"""
HS256 session token management.

Tokens carry the user id in `sub` and the role tag in `role`. The session
model itself lives outside this service; tokens are minted here for the
storefront session bridge and for tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from coinbook.config import get_settings


def _secret() -> str:
    secret = get_settings().session_secret
    if not secret:
        msg = "Session secret is not configured"
        raise jwt.InvalidTokenError(msg)
    return secret


def create_session_token(user_id: int, role: str = "regular", *, expires_minutes: int | None = None) -> str:
    """
    Create a session token.

    Args:
        user_id: The user's database ID.
        role: Role tag ("regular" or "admin").
        expires_minutes: Override the configured lifetime.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    lifetime = expires_minutes if expires_minutes is not None else settings.session_token_expire_minutes
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=lifetime),
        "iss": settings.session_issuer,
        "type": "session",
    }
    return jwt.encode(payload, _secret(), algorithm=settings.session_algorithm)


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify and decode a session token.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, or of the wrong type.
    """
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            _secret(),
            algorithms=[settings.session_algorithm],
            issuer=settings.session_issuer,
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if payload.get("type") != "session":
        msg = f"Expected token type 'session', got '{payload.get('type')}'"
        raise jwt.InvalidTokenError(msg)

    return payload
