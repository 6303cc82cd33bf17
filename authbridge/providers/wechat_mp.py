"""
WeChat official account web authorization (snsapi_base / snsapi_userinfo).
"""

from typing import Optional
from loguru import logger
from authbridge.exceptions import ProviderBusinessError
from authbridge.platforms import WECHAT_MP
from authbridge.providers.base import ExternalIdentity, OAuthProvider, TokenPair
from authbridge.providers.registry import registry
from authbridge.util import mask

AUTHORIZE_URL = "https://open.weixin.qq.com/connect/oauth2/authorize"
API_BASE_URL = "https://api.weixin.qq.com"
ACCESS_TOKEN_URL = f"{API_BASE_URL}/sns/oauth2/access_token"
REFRESH_TOKEN_URL = f"{API_BASE_URL}/sns/oauth2/refresh_token"
USERINFO_URL = f"{API_BASE_URL}/sns/userinfo"


@registry.register(WECHAT_MP)
class WeChatMpProvider(OAuthProvider):
    default_scopes = "snsapi_userinfo"

    async def build_authorization_url(self, state: str, options: Optional[dict] = None) -> str:
        options = options or {}
        query = self.build_query(
            {
                "appid": self.app_id,
                "redirect_uri": options.get("redirect_uri") or self.redirect_uri,
                "response_type": "code",
                "scope": options.get("scope") or self.scopes,
                "state": state,
            }
        )
        return f"{AUTHORIZE_URL}?{query}#wechat_redirect"

    def _check(self, payload: dict):
        errcode = payload.get("errcode")
        if errcode not in (None, 0):
            logger.error(f"wechat_mp error {errcode}: {payload.get('errmsg')}")
            raise ProviderBusinessError(self.platform, errcode, payload.get("errmsg", ""))

    async def exchange_code_for_identity(self, code: str) -> ExternalIdentity:
        logger.info(f"Exchanging wechat_mp code {mask(code)}")
        token = await self._request_json(
            "GET",
            ACCESS_TOKEN_URL,
            params={
                "appid": self.app_id,
                "secret": self.app_secret,
                "code": code,
                "grant_type": "authorization_code",
            },
        )
        self._check(token)
        self._require(token, "openid", "access_token")

        profile = {}
        if "snsapi_userinfo" in (token.get("scope") or ""):
            profile = await self._request_json(
                "GET",
                USERINFO_URL,
                params={
                    "access_token": token["access_token"],
                    "openid": token["openid"],
                    "lang": "zh_CN",
                },
            )
            self._check(profile)

        return ExternalIdentity(
            openid=token["openid"],
            unionid=profile.get("unionid") or token.get("unionid") or None,
            nickname=profile.get("nickname", ""),
            avatar=profile.get("headimgurl", ""),
            gender=int(profile.get("sex") or 0),
            country=profile.get("country", ""),
            province=profile.get("province", ""),
            city=profile.get("city", ""),
            language=profile.get("language", ""),
            raw={"openid": token["openid"], "scope": token.get("scope"), "userinfo": profile},
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            expires_in=token.get("expires_in"),
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenPair:
        payload = await self._request_json(
            "GET",
            REFRESH_TOKEN_URL,
            params={
                "appid": self.app_id,
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
