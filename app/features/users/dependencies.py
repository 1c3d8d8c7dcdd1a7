"""
FastAPI dependencies for authentication.
"""
from typing import Annotated
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.auth import decode_access_token, fetch_identity
from app.utils import utcnow


security = HTTPBearer()


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Resolve the bearer token to a local user.

    Users seen for the first time are provisioned from their Appwrite
    profile. Deactivated users get a 403.
    """
    appwrite_user_id = decode_access_token(credentials.credentials)

    result = await db.execute(select(User).where(User.appwrite_id == appwrite_user_id))
    user = result.scalar_one_or_none()

    if user is None:
        identity = await fetch_identity(appwrite_user_id)
        user = User(
            appwrite_id=appwrite_user_id,
            email=identity.get("email", ""),
            name=identity.get("name", "Unknown"),
        )
        db.add(user)

    user.last_login_at = utcnow()
    await db.flush()

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )
    return user


async def get_current_admin_user(
    user: Annotated[User, Depends(get_current_user)]
) -> User:
    """Require platform-admin privileges (catalog and reconciliation endpoints)."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return user


def get_authorization_header(request: Request) -> str:
    """Rate-limit key for slowapi: the caller's Authorization header."""
    return request.headers.get("Authorization", "") or "anonymous"
