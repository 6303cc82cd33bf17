"""
User directory collaborator: lookup and creation of local accounts.
"""

import random
from abc import ABC, abstractmethod
from typing import Optional
from fastapi import HTTPException, Request, status
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from authbridge.config import settings
from authbridge.database import get_session
from authbridge.user.schemas import ProfileHints, User
from authbridge.user.tokens import get_user_id_from_token


class UserDirectory(ABC):
    @abstractmethod
    async def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def create_user_for_external_identity(
        self, session: AsyncSession, hints: ProfileHints
    ) -> User:
        """
        Create (or return the already-created) account for an external identity.
        Runs inside the caller's transaction, must be idempotent on hints.external_key.
        """


class DatabaseUserDirectory(UserDirectory):
    async def find_user_by_id(self, user_id: str) -> Optional[User]:
        async with get_session() as session:
            return (
                await session.execute(select(User).where(User.user_id == user_id))
            ).scalar_one_or_none()

    async def create_user_for_external_identity(
        self, session: AsyncSession, hints: ProfileHints
    ) -> User:
        existing = (
            await session.execute(select(User).where(User.external_key == hints.external_key))
        ).scalar_one_or_none()
        if existing:
            logger.info(
                f"Reusing account {existing.user_id} previously created for external key "
                f"{hints.external_key[:12]}..."
            )
            return existing
        user = User(
            username=f"{hints.platform}_{hints.external_key[:16]}",
            nickname=hints.nickname or f"user{random.randint(1000, 9999)}",
            avatar=hints.avatar or "",
            external_key=hints.external_key,
        )
        session.add(user)
        await session.flush()
        logger.info(f"Created user {user.user_id} from {hints.platform} identity")
        return user


def get_current_user(raise_not_found: bool = True):
    """
    FastAPI dependency resolving the session user from a Bearer token or the
    session cookie.
    """

    async def _get_current_user(request: Request) -> Optional[User]:
        token = None
        authorization = request.headers.get("Authorization", "")
        if authorization.lower().startswith("bearer "):
            token = authorization.split(" ", 1)[1].strip()
        if not token:
            token = request.cookies.get(settings.session_cookie_name)
        user_id = get_user_id_from_token(token) if token else None
        user = await DatabaseUserDirectory().find_user_by_id(user_id) if user_id else None
        if not user or not user.is_active():
            if raise_not_found:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Authentication required",
                )
            return None
        return user

    return _get_current_user
