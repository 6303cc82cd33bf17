"""
Import every ORM so the declarative metadata is complete.
"""

from authbridge.user.schemas import User  # noqa: F401
from authbridge.oauth_config.schemas import OAuthConfig  # noqa: F401
from authbridge.handshake.schemas import OAuthAuthState  # noqa: F401
from authbridge.binding.schemas import UserOAuthBinding  # noqa: F401
from authbridge.audit.schemas import OAuthLoginLog  # noqa: F401
