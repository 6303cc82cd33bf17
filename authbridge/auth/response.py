"""
Result models for the federation flows.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel
from authbridge.binding.schemas import BindingSummary


class AuthorizationResponse(BaseModel):
    """Where to send the user and which state to round-trip."""

    auth_url: str
    state: str
    expires_at: datetime
    platform: str
    client_type: str


class UserSummary(BaseModel):
    user_id: str
    username: str
    nickname: Optional[str] = None
    avatar: Optional[str] = None

    class Config:
        from_attributes = True


class LoginResponse(BaseModel):
    """Response model for a completed login (includes the session token)."""

    session_token: str
    user: UserSummary
    is_new_user: bool
    binding: BindingSummary
    redirect_target: Optional[str] = None


class BindResponse(BaseModel):
    binding: BindingSummary


class RefreshResponse(BaseModel):
    access_token: str
    expires_in: Optional[int] = None


class BindingListResponse(BaseModel):
    bindings: List[BindingSummary]
    total: int


class BindStatusResponse(BaseModel):
    platform: str
    is_bound: bool
    binding: Optional[BindingSummary] = None
