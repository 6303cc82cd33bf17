"""
Error taxonomy for the federation flows.

Every error carries a stable ``kind`` (used in audit records and API payloads),
an internal ``message`` (logged), and a ``public_message`` (what callers see).
"""

from typing import Optional


class OAuthError(Exception):
    kind = "oauth_error"
    status_code = 400
    retryable = False
    default_public_message: Optional[str] = None

    def __init__(self, message: str = "", public_message: Optional[str] = None):
        self.message = message or self.kind
        self.public_message = public_message or self.default_public_message or self.message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.public_message}


class InvalidRequest(OAuthError):
    kind = "invalid_request"


class UnsupportedPlatform(InvalidRequest):
    kind = "unsupported_platform"


class ConfigNotFound(OAuthError):
    kind = "config_not_found"
    status_code = 404
    default_public_message = "This login platform is currently unavailable."


class StateInvalid(OAuthError):
    """
    Handshake state could not be redeemed. The subclasses only exist for
    diagnostics, callers always get the same public message.
    """

    kind = "state_invalid"
    retryable = True
    default_public_message = "Authorization expired, please try again."

    def __init__(self, reason: str = "invalid", message: str = ""):
        self.reason = reason
        super().__init__(message or f"state rejected: {reason}")

    def to_dict(self) -> dict:
        return {"error": StateInvalid.kind, "message": self.public_message}


class StateAlreadyUsed(StateInvalid):
    kind = "state_already_used"

    def __init__(self, message: str = ""):
        super().__init__("consumed", message)


class StateExpired(StateInvalid):
    kind = "state_expired"

    def __init__(self, message: str = ""):
        super().__init__("expired", message)


class IdentityMismatch(OAuthError):
    kind = "identity_mismatch"
    status_code = 403
    default_public_message = "This authorization was not issued for the current account."


class AlreadyBoundElsewhere(OAuthError):
    kind = "already_bound_elsewhere"
    status_code = 409
    default_public_message = "This third-party account is already linked to another user."


class AlreadyBoundBySelf(OAuthError):
    kind = "already_bound_by_self"
    status_code = 409
    default_public_message = "You have already linked an account on this platform."


class UserInactive(OAuthError):
    kind = "user_inactive"
    status_code = 403
    default_public_message = "This account is disabled."


class NotBound(OAuthError):
    kind = "not_bound"
    status_code = 404
    default_public_message = "No account is linked on this platform."


class NoRefreshToken(OAuthError):
    kind = "no_refresh_token"
    default_public_message = "No refresh token is stored for this binding."


class RefreshUnsupported(OAuthError):
    kind = "refresh_unsupported"
    default_public_message = "This platform cannot refresh tokens, please sign in again."


class ProviderError(OAuthError):
    kind = "provider_error"
    status_code = 502

    def __init__(self, platform: str, message: str = "", public_message: Optional[str] = None):
        self.platform = platform
        super().__init__(message, public_message)


class ProviderTransportError(ProviderError):
    """
    Network failure or timeout talking to the third party.
    """

    kind = "provider_transport_error"
    retryable = True
    default_public_message = "The login platform could not be reached, please try again."


class ProviderProtocolError(ProviderError):
    """
    Non-2xx status or a payload of unexpected shape.
    """

    kind = "provider_protocol_error"
    default_public_message = "The login platform returned an unexpected response."

    def __init__(self, platform: str, message: str = "", payload: Optional[dict] = None):
        self.payload = payload
        super().__init__(platform, message)


class ProviderBusinessError(ProviderError):
    """
    The third party answered with its own structured error code.
    """

    kind = "provider_business_error"

    def __init__(self, platform: str, platform_code, platform_message: str = ""):
        self.platform_code = platform_code
        self.platform_message = platform_message
        super().__init__(
            platform,
            f"{platform} error {platform_code}: {platform_message}",
            public_message=f"Login platform error {platform_code}: {platform_message}",
        )

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.public_message,
            "platform_code": self.platform_code,
        }


class ProviderUnsupported(ProviderError):
    """
    The provider has no such operation (e.g. refresh for session-key flows).
    """

    kind = "provider_unsupported"
    status_code = 400
