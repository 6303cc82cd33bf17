"""
WeChat mini program login (wx.login -> jscode2session).

There is no browser redirect and no refresh: the mini program hands over a
short-lived code, exchanged once for openid/unionid and a session key.
"""

import base64
import hashlib
import hmac
import json
from typing import Optional
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from loguru import logger
from pydantic import ValidationError
from authbridge.exceptions import ProviderBusinessError, ProviderProtocolError, ProviderUnsupported
from authbridge.platforms import WECHAT_MINIAPP
from authbridge.providers.base import ExternalIdentity, OAuthProvider, TokenPair
from authbridge.providers.registry import registry
from authbridge.util import mask

API_BASE_URL = "https://api.weixin.qq.com"
JSCODE2SESSION_URL = f"{API_BASE_URL}/sns/jscode2session"

ERROR_MESSAGES = {
    -1: "system busy, retry later",
    0: "ok",
    40013: "invalid appid",
    40125: "invalid appsecret",
    40163: "code been used",
    40029: "invalid code",
    45011: "api minute-quota reach limit",
}


def error_message(errcode: int) -> str:
    return ERROR_MESSAGES.get(errcode, f"unknown error code: {errcode}")


@registry.register(WECHAT_MINIAPP)
class WeChatMiniappProvider(OAuthProvider):
    async def build_authorization_url(self, state: str, options: Optional[dict] = None) -> str:
        logger.info("wechat_miniapp has no authorization URL, the client calls wx.login()")
        return ""

    async def exchange_code_for_identity(self, code: str) -> ExternalIdentity:
        logger.info(f"Exchanging wechat_miniapp code {mask(code)}")
        payload = await self._request_json(
            "GET",
            JSCODE2SESSION_URL,
            params={
                "appid": self.app_id,
                "secret": self.app_secret,
                "js_code": code,
                "grant_type": "authorization_code",
            },
        )
        errcode = payload.get("errcode")
        if errcode not in (None, 0):
            logger.error(f"wechat_miniapp jscode2session failed: {errcode} {payload.get('errmsg')}")
            raise ProviderBusinessError(
                self.platform, errcode, payload.get("errmsg") or error_message(errcode)
            )
        self._require(payload, "openid")
        identity = ExternalIdentity(
            openid=payload["openid"],
            unionid=payload.get("unionid") or None,
            raw={key: value for key, value in payload.items() if key != "session_key"},
            transient={"session_key": payload.get("session_key", "")},
        )
        logger.info(
            f"wechat_miniapp identity resolved openid={mask(identity.openid)} "
            f"has_unionid={bool(identity.unionid)}"
        )
        return identity

    async def refresh_access_token(self, refresh_token: str) -> TokenPair:
        raise ProviderUnsupported(
            self.platform,
            "wechat_miniapp sessions cannot be refreshed, call wx.login() again",
        )

    def decrypt_user_data(self, encrypted_data: str, iv: str, session_key: str) -> dict:
        """
        Decrypt a getUserProfile/getPhoneNumber payload (AES-128-CBC, PKCS#7)
        and check its watermark belongs to this app.
        """
        try:
            key = base64.b64decode(session_key)
            cipher = Cipher(algorithms.AES(key), modes.CBC(base64.b64decode(iv)))
            decryptor = cipher.decryptor()
            padded = decryptor.update(base64.b64decode(encrypted_data)) + decryptor.finalize()
            unpadder = padding.PKCS7(128).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            data = json.loads(plain)
        except (TypeError, ValueError) as exc:
            logger.error(f"wechat_miniapp user data decryption failed: {exc}")
            raise ProviderProtocolError(self.platform, "Unable to decrypt user data") from exc
        if not isinstance(data, dict):
            raise ProviderProtocolError(self.platform, "Decrypted user data is not an object")
        watermark = data.get("watermark") or {}
        if watermark.get("appid") and watermark["appid"] != self.app_id:
            raise ProviderProtocolError(self.platform, "Decrypted data belongs to another app")
        return data

    def enrich_identity(self, identity: ExternalIdentity, profile: dict) -> ExternalIdentity:
        """
        Accepts the encrypted getUserProfile payload (encrypted_data + iv), the
        signed plain one (raw_data + signature) or bare profile fields.
        """
        if not isinstance(profile, dict):
            raise ProviderProtocolError(self.platform, "User profile must be an object")
        session_key = identity.transient.get("session_key", "")
        if profile.get("encrypted_data") and profile.get("iv"):
            detail = self.decrypt_user_data(profile["encrypted_data"], profile["iv"], session_key)
        elif profile.get("raw_data"):
            if not isinstance(profile["raw_data"], str):
                raise ProviderProtocolError(self.platform, "raw_data must be a string")
            if not self.verify_user_signature(
                profile["raw_data"], profile.get("signature", ""), session_key
            ):
                raise ProviderProtocolError(self.platform, "User data signature mismatch")
            try:
                detail = json.loads(profile["raw_data"])
            except ValueError as exc:
                raise ProviderProtocolError(self.platform, "Invalid raw_data") from exc
        else:
            detail = profile
        if not isinstance(detail, dict):
            raise ProviderProtocolError(self.platform, "User profile must be an object")
        return self.merge_profile(identity, detail)

    @staticmethod
    def verify_user_signature(raw_data: str, signature: str, session_key: str) -> bool:
        expected = hashlib.sha1((raw_data + session_key).encode()).hexdigest()
        return hmac.compare_digest(expected.encode(), str(signature or "").encode())

    @staticmethod
    def merge_profile(identity: ExternalIdentity, detail: dict) -> ExternalIdentity:
        """
        Enrich the jscode2session identity with the mini program's user profile.
        Unparseable gender values keep the current one.
        """
        try:
            gender = int(detail.get("gender") or identity.gender)
        except (TypeError, ValueError):
            gender = identity.gender
        update = {
            "nickname": detail.get("nickName") or identity.nickname,
            "avatar": detail.get("avatarUrl") or identity.avatar,
            "gender": gender,
            "country": detail.get("country") or identity.country,
            "province": detail.get("province") or identity.province,
            "city": detail.get("city") or identity.city,
            "language": detail.get("language") or identity.language,
        }
        if detail.get("unionId") and not identity.unionid:
            update["unionid"] = detail["unionId"]
        try:
            return ExternalIdentity.model_validate({**identity.model_dump(), **update})
        except ValidationError as exc:
            raise ProviderProtocolError(WECHAT_MINIAPP, f"Invalid user profile: {exc}") from exc
