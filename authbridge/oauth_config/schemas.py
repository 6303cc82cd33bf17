"""
OAuth application registrations (one per platform/client surface).
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, SecretStr, field_validator
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from authbridge.crypto import EncryptedString
from authbridge.database import Base, generate_uuid
from authbridge.platforms import is_valid_client_type, is_valid_platform


class OAuthConfig(Base):
    __tablename__ = "oauth_configs"

    config_id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    platform = Column(String(32), nullable=False)
    client_type = Column(String(16), nullable=False)
    app_id = Column(String, nullable=False)
    app_secret = Column(EncryptedString, nullable=False)
    redirect_uri = Column(String, nullable=True)
    scopes = Column(String, nullable=True)
    extra_config = Column(JSON, nullable=True, default=dict)
    enabled = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("platform", "app_id", name="constraint_oauth_config_platform_app"),
        Index("idx_oauth_config_lookup", "platform", "client_type", "enabled"),
    )


class ResolvedConfig(BaseModel):
    """
    Detached, decrypted view of an enabled configuration handed to providers.
    """

    model_config = ConfigDict(from_attributes=True)

    config_id: str
    name: str
    platform: str
    client_type: str
    app_id: str
    app_secret: SecretStr
    redirect_uri: Optional[str] = None
    scopes: Optional[str] = None
    extra_config: Optional[dict] = None


class OAuthConfigCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    platform: str
    client_type: str
    app_id: str
    app_secret: str
    redirect_uri: Optional[str] = None
    scopes: Optional[str] = None
    extra_config: Optional[dict] = None
    enabled: bool = True
    priority: int = 0

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or len(v) > 64:
            raise ValueError("Name must be between 1 and 64 characters")
        return v

    @field_validator("platform")
    @classmethod
    def validate_platform(cls, v):
        if not is_valid_platform(v):
            raise ValueError(f"Unsupported platform: {v}")
        return v

    @field_validator("client_type")
    @classmethod
    def validate_client_type(cls, v):
        if not is_valid_client_type(v):
            raise ValueError(f"Unsupported client type: {v}")
        return v

    @field_validator("redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, v):
        if v and not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid redirect URI: {v}")
        return v
