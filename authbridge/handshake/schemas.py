"""
Single-use handshake state records binding an authorization request to its callback.
"""

import secrets
from datetime import datetime
from typing import Optional
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, String, Text
from authbridge.constants import STATE_ACTION_BIND, STATE_ACTION_LOGIN, STATE_TOKEN_BYTES
from authbridge.database import Base, generate_uuid


class OAuthAuthState(Base):
    __tablename__ = "oauth_auth_states"

    state_id = Column(String, primary_key=True, default=generate_uuid)
    state = Column(String(128), unique=True, nullable=False, index=True)
    config_id = Column(
        String,
        ForeignKey("oauth_configs.config_id", ondelete="CASCADE"),
        nullable=False,
    )
    platform = Column(String(32), nullable=False)
    client_type = Column(String(16), nullable=False)
    action = Column(String(16), nullable=False)
    user_id = Column(String, nullable=True)
    redirect_target = Column(Text, nullable=True)
    extra_data = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_oauth_state_expires", "expires_at"),)

    @staticmethod
    def generate_state() -> str:
        """Unguessable state token, STATE_TOKEN_BYTES of entropy, hex encoded."""
        return secrets.token_hex(STATE_TOKEN_BYTES)

    def is_login_action(self) -> bool:
        return self.action == STATE_ACTION_LOGIN

    def is_bind_action(self) -> bool:
        return self.action == STATE_ACTION_BIND

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_consumed(self) -> bool:
        return self.consumed_at is not None

    def is_valid(self, now: datetime) -> bool:
        return not self.is_expired(now) and not self.is_consumed()

    def invalid_reason(self, now: datetime) -> Optional[str]:
        if self.is_consumed():
            return "consumed"
        if self.is_expired(now):
            return "expired"
        return None
