"""
Request models for the federation endpoints.
"""

from typing import Optional
from urllib.parse import urlparse
from pydantic import BaseModel, field_validator
from authbridge.config import settings
from authbridge.constants import STATE_ACTION_LOGIN, STATE_ACTIONS
from authbridge.platforms import is_valid_client_type, is_valid_platform


def _validate_platform(v):
    if not is_valid_platform(v):
        raise ValueError(f"Unsupported platform: {v}")
    return v


class AuthorizeArgs(BaseModel):
    platform: str
    client_type: str = "web"
    action: str = STATE_ACTION_LOGIN
    redirect_url: Optional[str] = None
    scope: Optional[str] = None
    extra: Optional[dict] = None

    validate_platform = field_validator("platform")(_validate_platform)

    @field_validator("client_type")
    @classmethod
    def validate_client_type(cls, v):
        if not is_valid_client_type(v):
            raise ValueError(f"Invalid client type: {v}")
        return v

    @field_validator("action")
    @classmethod
    def validate_action(cls, v):
        if v not in STATE_ACTIONS:
            raise ValueError(f"Invalid action: {v}")
        return v

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect_url(cls, v):
        """
        Post-login redirects stay on our own domain: relative paths, or absolute
        https URLs on base_domain or one of its subdomains.
        """
        if not v:
            return None
        if v.startswith("/") and not v.startswith("//"):
            return v
        parsed = urlparse(v)
        host = (parsed.hostname or "").lower()
        domain = settings.base_domain.lower()
        if parsed.scheme == "https" and (host == domain or host.endswith(f".{domain}")):
            return v
        raise ValueError(f"Redirect URL not allowed: {v}")


class LoginArgs(BaseModel):
    platform: str
    code: str
    state: Optional[str] = None
    client_type: Optional[str] = None

    validate_platform = field_validator("platform")(_validate_platform)


class MiniappLoginArgs(BaseModel):
    platform: str = "wechat_miniapp"
    code: str
    client_type: Optional[str] = None
    profile: Optional[dict] = None

    validate_platform = field_validator("platform")(_validate_platform)


class BindArgs(BaseModel):
    platform: str
    code: str
    state: str
    profile: Optional[dict] = None

    validate_platform = field_validator("platform")(_validate_platform)


class UnbindArgs(BaseModel):
    platform: str

    validate_platform = field_validator("platform")(_validate_platform)
