"""
Append-only attempt records for authorize/login/bind/unbind/refresh.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, Text
from authbridge.database import Base, generate_uuid
from authbridge.util import utcnow


class OAuthLoginLog(Base):
    __tablename__ = "oauth_login_logs"

    log_id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=True)
    config_id = Column(String, nullable=True)
    platform = Column(String(32), nullable=False)
    action = Column(String(16), nullable=False)
    result = Column(String(16), nullable=False)
    error_kind = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    openid = Column(String(128), nullable=True)
    is_new_user = Column(Boolean, default=False, nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    request_data = Column(JSON, nullable=True)
    response_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_oauth_log_user_platform", "user_id", "platform", "action"),
        Index("idx_oauth_log_platform_created", "platform", "created_at"),
    )


class AuditAttempt(BaseModel):
    platform: str
    action: str
    result: str
    user_id: Optional[str] = None
    config_id: Optional[str] = None
    openid: Optional[str] = None
    is_new_user: bool = False
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_data: dict = Field(default_factory=dict)
    response_data: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
