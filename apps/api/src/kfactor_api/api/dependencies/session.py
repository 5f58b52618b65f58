"""Session-aware dependencies; the auth edge forwards the signed-in user id."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from kfactor_api.db.session import get_session
from kfactor_api.models.user import User


def _parse_user_id(raw: str) -> UUID:
    try:
        return UUID(raw)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error


async def require_member_session(
    session_user: str | None = Header(None, alias="X-Session-User"),
    db: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the authenticated user from forwarded session headers."""

    if not session_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

    user = await db.get(User, _parse_user_id(session_user))
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session user not found",
        )
    return user


async def optional_member_session(
    session_user: str | None = Header(None, alias="X-Session-User"),
) -> UUID | None:
    """Session user id when present and well formed; anonymous flows never fail here."""

    if not session_user:
        return None
    try:
        return UUID(session_user)
    except ValueError:
        return None
