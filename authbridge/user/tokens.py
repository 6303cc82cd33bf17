"""
Session token issuance and validation (HS256 JWT).
"""

import time
from typing import Optional
import jwt
from loguru import logger
from authbridge.config import settings
from authbridge.user.schemas import User


def create_token(user: User, ttl: Optional[int] = None) -> str:
    now = int(time.time())
    payload = {
        "sub": user.user_id,
        "iat": now,
        "exp": now + (ttl or settings.session_token_ttl_seconds),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def get_user_id_from_token(token: str) -> Optional[str]:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except jwt.PyJWTError as exc:
        logger.warning(f"Rejected session token: {exc}")
        return None
    return payload.get("sub")


class SessionIssuer:
    """
    Default session collaborator, swap it out to delegate to a real session service.
    """

    async def issue_session_token(self, user: User) -> str:
        return create_token(user)
