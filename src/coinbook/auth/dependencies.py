"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.auth.jwt import verify_token
from coinbook.database import get_session
from coinbook.db.models import User
from coinbook.errors import Forbidden, NotAuthorized

_bearer = HTTPBearer(auto_error=False)


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
    return result.scalar_one_or_none()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> User:
    """Extract and verify the session token, return the User model."""
    if credentials is None:
        raise NotAuthorized("Missing session token")
    try:
        payload = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise NotAuthorized(str(e)) from e

    user = await get_user_by_id(db, int(payload["sub"]))
    if user is None:
        raise NotAuthorized("User not found")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Same as get_current_user but requires the admin role."""
    if not user.is_admin:
        raise Forbidden("Admin role required")
    return user
