"""
GitHub OAuth app / GitHub App user authorization.
"""

from typing import Optional
from loguru import logger
from authbridge.exceptions import ProviderBusinessError, ProviderUnsupported
from authbridge.platforms import GITHUB
from authbridge.providers.base import ExternalIdentity, OAuthProvider, TokenPair
from authbridge.providers.registry import registry
from authbridge.util import mask

AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
USER_URL = "https://api.github.com/user"


@registry.register(GITHUB)
class GitHubProvider(OAuthProvider):
    default_scopes = "read:user"

    async def build_authorization_url(self, state: str, options: Optional[dict] = None) -> str:
        options = options or {}
        query = self.build_query(
            {
                "client_id": self.app_id,
                "redirect_uri": options.get("redirect_uri") or self.redirect_uri,
                "scope": options.get("scope") or self.scopes,
                "state": state,
                "allow_signup": "true",
            }
        )
        return f"{AUTHORIZE_URL}?{query}"

    def _check(self, payload: dict):
        # GitHub reports token endpoint errors with HTTP 200.
        if payload.get("error"):
            logger.error(f"github error {payload['error']}: {payload.get('error_description')}")
            raise ProviderBusinessError(
                self.platform, payload["error"], payload.get("error_description", "")
            )

    async def exchange_code_for_identity(self, code: str) -> ExternalIdentity:
        logger.info(f"Exchanging github code {mask(code)}")
        token = await self._request_json(
            "POST",
            ACCESS_TOKEN_URL,
            data={
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "code": code,
                "redirect_uri": self.redirect_uri or None,
            },
        )
        self._check(token)
        self._require(token, "access_token")

        user = await self._request_json(
            "GET",
            USER_URL,
            headers={
                "Authorization": f"Bearer {token['access_token']}",
                "Accept": "application/vnd.github+json",
            },
        )
        self._require(user, "id")
        return ExternalIdentity(
            openid=str(user["id"]),
            nickname=user.get("name") or user.get("login") or "",
            avatar=user.get("avatar_url") or "",
            city=user.get("location") or "",
            raw=user,
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            expires_in=token.get("expires_in"),
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenPair:
        if not self.extra.get("expiring_user_tokens"):
            raise ProviderUnsupported(
                self.platform, "GitHub OAuth app tokens do not expire and cannot be refreshed"
            )
        payload = await self._request_json(
            "POST",
            ACCESS_TOKEN_URL,
            data={
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        self._check(payload)
        self._require(payload, "access_token")
        return TokenPair(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
        )
