"""
Provider contract: translate one platform's wire protocol into ExternalIdentity.

Providers never persist anything. Network calls run with bounded timeouts and
are plain coroutines, so cancelling the enclosing task cancels the request.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Optional, Tuple
from urllib.parse import urlencode
import aiohttp
from loguru import logger
from pydantic import BaseModel, Field
from authbridge.config import settings
from authbridge.constants import PROVIDER_USER_AGENT
from authbridge.exceptions import ConfigNotFound, ProviderProtocolError, ProviderTransportError
from authbridge.oauth_config.schemas import ResolvedConfig
from authbridge.util import redact

GENDER_UNKNOWN = 0
GENDER_MALE = 1
GENDER_FEMALE = 2


class ExternalIdentity(BaseModel):
    """
    Normalized identity returned by every provider.
    """

    openid: str
    unionid: Optional[str] = None
    nickname: str = ""
    avatar: str = ""
    gender: int = GENDER_UNKNOWN
    country: str = ""
    province: str = ""
    city: str = ""
    language: str = ""
    raw: dict = Field(default_factory=dict, repr=False)
    access_token: Optional[str] = Field(default=None, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_in: Optional[int] = None
    # Provider specific material that must not be persisted (e.g. session keys).
    transient: dict = Field(default_factory=dict, repr=False)

    def profile(self) -> dict:
        return {
            "nickname": self.nickname,
            "avatar": self.avatar,
            "gender": self.gender,
            "country": self.country,
            "province": self.province,
            "city": self.city,
            "language": self.language,
        }


class TokenPair(BaseModel):
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_in: Optional[int] = None


class OAuthProvider(ABC):
    platform: str = ""
    required_config: Tuple[str, ...] = ("app_id", "app_secret")
    default_scopes: str = ""

    def __init__(self, config: ResolvedConfig):
        self.config = config
        self.validate_config()

    def validate_config(self):
        for key in self.required_config:
            value = getattr(self.config, key, None)
            if hasattr(value, "get_secret_value"):
                value = value.get_secret_value()
            if not value:
                raise ConfigNotFound(
                    f"OAuth config {self.config.config_id} for {self.platform} is missing {key}"
                )
        if self.config.platform != self.platform:
            raise ConfigNotFound(
                f"OAuth config {self.config.config_id} is for {self.config.platform}, not {self.platform}"
            )

    @property
    def client_type(self) -> str:
        return self.config.client_type

    @property
    def app_id(self) -> str:
        return self.config.app_id

    @property
    def app_secret(self) -> str:
        return self.config.app_secret.get_secret_value()

    @property
    def redirect_uri(self) -> str:
        return self.config.redirect_uri or ""

    @property
    def scopes(self) -> str:
        return self.config.scopes or self.default_scopes

    @property
    def extra(self) -> dict:
        return self.config.extra_config or {}

    @abstractmethod
    async def build_authorization_url(self, state: str, options: Optional[dict] = None) -> str:
        """
        URL to send the browser to, or "" when the platform has no redirect step
        (native SDK flows hand the code over directly).
        """

    @abstractmethod
    async def exchange_code_for_identity(self, code: str) -> ExternalIdentity: ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenPair:
        """
        New token pair, or ProviderUnsupported if the platform has no refresh.
        """

    def enrich_identity(self, identity: ExternalIdentity, profile: dict) -> ExternalIdentity:
        """
        Merge a client supplied profile payload into the identity. Platforms
        without such a payload keep the identity as is.
        """
        return identity

    @staticmethod
    def build_query(params: dict) -> str:
        return urlencode({k: v for k, v in params.items() if v is not None and v != ""})

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=settings.provider_total_timeout,
            connect=settings.provider_connect_timeout,
        )

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        json_body: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> dict:
        """
        Perform one HTTP call and decode a JSON object, mapping failures to
        ProviderTransportError (network/timeout) or ProviderProtocolError
        (non-2xx, undecodable, not an object).
        """
        request_headers = {"User-Agent": PROVIDER_USER_AGENT, "Accept": "application/json"}
        request_headers.update(headers or {})
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.request(
                    method,
                    url,
                    params=params,
                    data=data,
                    json=json_body,
                    headers=request_headers,
                ) as response:
                    status = response.status
                    body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(f"{self.platform}: {method} {url} failed: {exc!r}")
            raise ProviderTransportError(
                self.platform, f"{method} {url} failed: {exc!r}"
            ) from exc

        if not 200 <= status < 300:
            logger.error(f"{self.platform}: {method} {url} returned HTTP {status}: {body[:256]}")
            raise ProviderProtocolError(
                self.platform, f"HTTP {status} from {url}", payload={"body": body[:512]}
            )
        try:
            payload = json.loads(body)
        except ValueError as exc:
            logger.error(f"{self.platform}: undecodable response from {url}: {body[:256]}")
            raise ProviderProtocolError(
                self.platform, f"Invalid JSON from {url}", payload={"body": body[:512]}
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderProtocolError(
                self.platform, f"Expected a JSON object from {url}", payload={"body": body[:512]}
            )
        return payload

    def _require(self, payload: dict, *keys: str):
        missing = [key for key in keys if not payload.get(key)]
        if missing:
            logger.error(f"{self.platform}: response missing {missing}: {redact(payload)}")
            raise ProviderProtocolError(
                self.platform,
                f"Response missing {', '.join(missing)}",
                payload=redact(payload),
            )
