"""
Links between local users and third-party identities.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, computed_field
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from authbridge.crypto import EncryptedString
from authbridge.database import Base, generate_uuid
from authbridge.platforms import platform_name


class BindingStatus(str, Enum):
    BOUND = "bound"
    UNBOUND = "unbound"


_BOUND_ONLY = text("status = 'bound'")


class UserOAuthBinding(Base):
    __tablename__ = "user_oauth_bindings"

    binding_id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    config_id = Column(
        String,
        ForeignKey("oauth_configs.config_id", ondelete="CASCADE"),
        nullable=False,
    )
    platform = Column(String(32), nullable=False)
    openid = Column(String(128), nullable=False)
    unionid = Column(String(128), nullable=True)
    nickname = Column(String, nullable=True)
    avatar = Column(Text, nullable=True)
    gender = Column(Integer, default=0, nullable=False)
    country = Column(String(64), nullable=True)
    province = Column(String(64), nullable=True)
    city = Column(String(64), nullable=True)
    language = Column(String(32), nullable=True)
    oauth_info = Column(JSON, nullable=True)
    access_token = Column(EncryptedString, nullable=True)
    refresh_token = Column(EncryptedString, nullable=True)
    expires_in = Column(Integer, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    bind_time = Column(DateTime, nullable=False)
    last_login_time = Column(DateTime, nullable=True)
    login_count = Column(Integer, default=0, nullable=False)
    status = Column(String(16), default=BindingStatus.BOUND.value, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # Storage-level uniqueness among live bindings, history rows are exempt.
        Index(
            "uq_oauth_binding_identity",
            "config_id",
            "openid",
            unique=True,
            postgresql_where=_BOUND_ONLY,
            sqlite_where=_BOUND_ONLY,
        ),
        Index(
            "uq_oauth_binding_user_config",
            "user_id",
            "config_id",
            unique=True,
            postgresql_where=_BOUND_ONLY,
            sqlite_where=_BOUND_ONLY,
        ),
        Index("idx_oauth_binding_user_platform", "user_id", "platform", "status"),
        Index("idx_oauth_binding_unionid", "unionid"),
    )

    def is_bound(self) -> bool:
        return self.status == BindingStatus.BOUND.value

    def is_token_expired(self, now: datetime) -> bool:
        if not self.token_expires_at:
            return False
        return now >= self.token_expires_at

    def set_tokens(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        expires_in: Optional[int],
        now: datetime,
    ):
        if access_token:
            self.access_token = access_token
        if refresh_token:
            self.refresh_token = refresh_token
        self.expires_in = expires_in
        self.token_expires_at = now + timedelta(seconds=expires_in) if expires_in else None


class BindingSummary(BaseModel):
    """
    Public view of a binding, never carries tokens or the raw payload.
    """

    model_config = ConfigDict(from_attributes=True)

    binding_id: str
    user_id: str
    config_id: str
    platform: str
    openid: str
    unionid: Optional[str] = None
    nickname: Optional[str] = None
    avatar: Optional[str] = None
    status: str
    bind_time: datetime
    last_login_time: Optional[datetime] = None
    login_count: int = 0
    token_expires_at: Optional[datetime] = None

    @computed_field
    @property
    def platform_name(self) -> str:
        return platform_name(self.platform)
