"""
Unit test conftest: file-backed sqlite database, fake redis, stub providers.
"""

import asyncio
import os
import tempfile
from cryptography.fernet import Fernet

_tmpdir = tempfile.mkdtemp(prefix="authbridge-tests-")
os.environ["AUTHBRIDGE_SQLALCHEMY"] = f"sqlite+aiosqlite:///{_tmpdir}/test.db"
os.environ["AUTHBRIDGE_FIELD_ENCRYPTION_KEYS"] = Fernet.generate_key().decode()
os.environ["AUTHBRIDGE_JWT_SECRET"] = "test-secret"
os.environ["AUTHBRIDGE_BASE_DOMAIN"] = "example.com"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
import authbridge.database.orms  # noqa: E402,F401
from authbridge.audit.service import AuditSink  # noqa: E402
from authbridge.config import settings  # noqa: E402
from authbridge.database import Base, engine  # noqa: E402
from authbridge.exceptions import ProviderTransportError, ProviderUnsupported  # noqa: E402
from authbridge.providers.base import ExternalIdentity, OAuthProvider, TokenPair  # noqa: E402
from authbridge.providers.registry import ProviderRegistry  # noqa: E402


class FakeRedis:
    """
    In-memory stand-in for the redis client (expiry is recorded, not enforced).
    """

    def __init__(self):
        self.data = {}
        self.expiry = {}

    async def get(self, key):
        value = self.data.get(key)
        return value.encode() if isinstance(value, str) else value

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.data.pop(key, None) is not None)
            self.expiry.pop(key, None)
        return removed

    async def getdel(self, key):
        value = await self.get(key)
        await self.delete(key)
        return value

    async def close(self):
        pass


class ListAuditSink(AuditSink):
    def __init__(self):
        self.attempts = []

    def record(self, attempt):
        self.attempts.append(attempt)

    def by_action(self, action):
        return [attempt for attempt in self.attempts if attempt.action == action]


class StubProvider(OAuthProvider):
    """
    The code is the openid. "transport-error" simulates a timeout, a code
    starting with "union:" also sets a unionid.
    """

    async def build_authorization_url(self, state, options=None):
        return f"https://stub.example/{self.platform}/authorize?state={state}"

    async def exchange_code_for_identity(self, code):
        await asyncio.sleep(0)
        if code == "transport-error":
            raise ProviderTransportError(self.platform, "timed out")
        unionid = None
        if code.startswith("union:"):
            code = code.split(":", 1)[1]
            unionid = f"u-{code}"
        return ExternalIdentity(
            openid=code,
            unionid=unionid,
            nickname=f"nick-{code}",
            avatar=f"https://avatars.example/{code}.png",
            raw={"id": code},
            access_token=f"at-{code}",
            refresh_token=f"rt-{code}",
            expires_in=7200,
        )

    async def refresh_access_token(self, refresh_token):
        return TokenPair(
            access_token=f"new-{refresh_token}",
            refresh_token=f"{refresh_token}-2",
            expires_in=3600,
        )


class StubSdkProvider(StubProvider):
    """Native SDK style: no redirect step and no refresh."""

    async def build_authorization_url(self, state, options=None):
        return ""

    async def refresh_access_token(self, refresh_token):
        raise ProviderUnsupported(self.platform, "no refresh for session-key logins")


def make_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.add("github", type("StubGitHub", (StubProvider,), {}))
    registry.add("wechat_mp", type("StubWeChatMp", (StubProvider,), {}))
    registry.add("wechat_miniapp", type("StubMiniapp", (StubSdkProvider,), {}))
    return registry


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(settings, "_redis_client", fake)
    yield fake


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
def audit_sink():
    return ListAuditSink()


@pytest.fixture
def stub_registry():
    return make_registry()


@pytest.fixture
def auth_service(stub_registry, audit_sink):
    from authbridge.auth.service import OAuthAuthService

    return OAuthAuthService(providers=stub_registry, audit_sink=audit_sink)


@pytest_asyncio.fixture
async def make_config(db):
    from authbridge.oauth_config.schemas import OAuthConfigCreateRequest
    from authbridge.oauth_config.service import create_config

    async def _make_config(platform="github", client_type="web", **kwargs):
        values = {
            "name": f"{platform}-{client_type}",
            "platform": platform,
            "client_type": client_type,
            "app_id": kwargs.pop("app_id", f"{platform}-{client_type}-app"),
            "app_secret": "s3cret-value",
            "redirect_uri": "https://example.com/oauth/callback",
        }
        values.update(kwargs)
        return await create_config(OAuthConfigCreateRequest(**values))

    return _make_config


@pytest_asyncio.fixture
async def make_user(db):
    from authbridge.database import get_session
    from authbridge.user.schemas import User

    async def _make_user(username="alice", active=True):
        async with get_session() as session:
            user = User(username=username, nickname=username, active=active)
            session.add(user)
            await session.commit()
            return user

    return _make_user
