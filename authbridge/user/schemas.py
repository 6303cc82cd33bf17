"""
Minimal local user model backing the default user directory.
"""

from typing import Optional
from pydantic import BaseModel
from sqlalchemy import Boolean, Column, DateTime, String, func
from authbridge.database import Base, generate_uuid


class User(Base):
    __tablename__ = "users"

    user_id = Column(String, primary_key=True, default=generate_uuid)
    username = Column(String, unique=True, nullable=False)
    nickname = Column(String, nullable=True)
    avatar = Column(String, nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    # Idempotency key for accounts created from an external identity.
    external_key = Column(String, unique=True, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    def is_active(self) -> bool:
        return bool(self.active)


class ProfileHints(BaseModel):
    """
    What the federation flow knows about a person when it asks for a new account.
    """

    external_key: str
    platform: str
    nickname: Optional[str] = None
    avatar: Optional[str] = None
