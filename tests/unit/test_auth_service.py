"""
Tests for the auth orchestrator flows.
"""

import asyncio
import hashlib
import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch
import pytest
from sqlalchemy import func, select
from authbridge.auth.service import OAuthAuthService
from authbridge.binding.schemas import UserOAuthBinding
from authbridge.database import get_session
from authbridge.exceptions import (
    AlreadyBoundBySelf,
    AlreadyBoundElsewhere,
    ConfigNotFound,
    IdentityMismatch,
    InvalidRequest,
    NoRefreshToken,
    NotBound,
    OAuthError,
    ProviderProtocolError,
    ProviderTransportError,
    RefreshUnsupported,
    StateAlreadyUsed,
    StateExpired,
    StateInvalid,
    UnsupportedPlatform,
    UserInactive,
)
from authbridge.handshake.service import load_state
from authbridge.oauth_config.service import set_config_enabled
from authbridge.providers.base import ExternalIdentity
from authbridge.providers.registry import ProviderRegistry
from authbridge.providers.wechat_miniapp import WeChatMiniappProvider
from authbridge.user.schemas import User
from authbridge.user.tokens import get_user_id_from_token


async def _bound_rows(**filters):
    async with get_session() as session:
        query = select(func.count()).select_from(UserOAuthBinding).where(
            UserOAuthBinding.status == "bound"
        )
        for key, value in filters.items():
            query = query.where(getattr(UserOAuthBinding, key) == value)
        return (await session.execute(query)).scalar_one()


async def _user_count():
    async with get_session() as session:
        return (await session.execute(select(func.count()).select_from(User))).scalar_one()


class TestInitiate:
    @pytest.mark.asyncio
    async def test_login(self, auth_service, make_config, audit_sink):
        config = await make_config()
        result = await auth_service.initiate_authorization(
            "github", "web", "login", redirect_url="/after", ip_address="1.2.3.4"
        )
        assert result.auth_url.endswith(f"state={result.state}")
        record = await load_state(result.state)
        assert record.config_id == config.config_id
        assert record.redirect_target == "/after"
        assert record.user_id is None
        assert result.expires_at == record.expires_at
        (attempt,) = audit_sink.by_action("authorize")
        assert attempt.result == "success"
        assert attempt.ip_address == "1.2.3.4"

    @pytest.mark.asyncio
    async def test_sdk_platform_has_empty_url(self, auth_service, make_config):
        await make_config("wechat_miniapp", "miniapp")
        result = await auth_service.initiate_authorization("wechat_miniapp", "miniapp", "login")
        assert result.auth_url == ""
        assert result.state

    @pytest.mark.asyncio
    async def test_bind_requires_user(self, auth_service, make_config, audit_sink):
        await make_config()
        with pytest.raises(InvalidRequest):
            await auth_service.initiate_authorization("github", "web", "bind")
        (attempt,) = audit_sink.by_action("authorize")
        assert attempt.result == "fail"
        assert attempt.error_kind == "invalid_request"

    @pytest.mark.asyncio
    async def test_invalid_action(self, auth_service, make_config):
        await make_config()
        with pytest.raises(InvalidRequest):
            await auth_service.initiate_authorization("github", "web", "signup")

    @pytest.mark.asyncio
    async def test_config_not_found(self, auth_service, db):
        with pytest.raises(ConfigNotFound) as exc_info:
            await auth_service.initiate_authorization("github", "web", "login")
        assert exc_info.value.to_dict()["error"] == "config_not_found"

    @pytest.mark.asyncio
    async def test_unsupported_platform(self, auth_service, db):
        with pytest.raises(UnsupportedPlatform):
            await auth_service.initiate_authorization("weibo", "web", "login")


class TestCompleteLogin:
    @pytest.mark.asyncio
    async def test_round_trip(self, auth_service, make_config, audit_sink):
        config = await make_config()
        first = await auth_service.initiate_authorization("github", "web", "login")
        result = await auth_service.complete_login("github", "ext-1", first.state)
        assert result.is_new_user is True
        assert result.binding.openid == "ext-1"
        assert result.binding.config_id == config.config_id
        assert result.binding.login_count == 1
        assert get_user_id_from_token(result.session_token) == result.user.user_id
        assert (await load_state(first.state)).consumed_at is not None

        second = await auth_service.initiate_authorization("github", "web", "login")
        again = await auth_service.complete_login("github", "ext-1", second.state)
        assert again.is_new_user is False
        assert again.user.user_id == result.user.user_id
        assert again.binding.binding_id == result.binding.binding_id
        assert again.binding.login_count == 2
        assert await _user_count() == 1

        logins = audit_sink.by_action("login")
        assert [attempt.is_new_user for attempt in logins] == [True, False]
        assert all(attempt.result == "success" for attempt in logins)

    @pytest.mark.asyncio
    async def test_redirect_target_returned(self, auth_service, make_config):
        await make_config()
        started = await auth_service.initiate_authorization(
            "github", "web", "login", redirect_url="/welcome"
        )
        result = await auth_service.complete_login("github", "ext-1", started.state)
        assert result.redirect_target == "/welcome"

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, auth_service, make_config, audit_sink):
        await make_config()
        started = await auth_service.initiate_authorization("github", "web", "login")
        await auth_service.complete_login("github", "ext-1", started.state)
        with pytest.raises(StateInvalid) as exc_info:
            await auth_service.complete_login("github", "ext-1", started.state)
        assert exc_info.value.to_dict() == {
            "error": "state_invalid",
            "message": "Authorization expired, please try again.",
        }
        assert audit_sink.by_action("login")[-1].result == "fail"

    @pytest.mark.asyncio
    async def test_state_platform_mismatch(self, auth_service, make_config):
        await make_config("github")
        await make_config("wechat_mp")
        started = await auth_service.initiate_authorization("github", "web", "login")
        with pytest.raises(StateInvalid) as exc_info:
            await auth_service.complete_login("wechat_mp", "ext-1", started.state)
        assert exc_info.value.reason == "platform_mismatch"

    @pytest.mark.asyncio
    async def test_bind_state_cannot_log_in(self, auth_service, make_config, make_user):
        await make_config()
        user = await make_user()
        started = await auth_service.initiate_authorization(
            "github", "web", "bind", user_id=user.user_id
        )
        with pytest.raises(StateInvalid) as exc_info:
            await auth_service.complete_login("github", "ext-1", started.state)
        assert exc_info.value.reason == "action_mismatch"

    @pytest.mark.asyncio
    async def test_stateless_login_policy(self, auth_service, make_config):
        await make_config()
        await make_config("wechat_miniapp", "miniapp")
        with pytest.raises(StateInvalid):
            await auth_service.complete_login("github", "ext-1")
        result = await auth_service.complete_login("wechat_miniapp", "mini-1")
        assert result.is_new_user
        assert result.binding.platform == "wechat_miniapp"

    @pytest.mark.asyncio
    async def test_stateless_client_type_hint(self, auth_service, make_config):
        await make_config("wechat_miniapp", "miniapp")
        with pytest.raises(ConfigNotFound):
            await auth_service.complete_login("wechat_miniapp", "mini-1", client_type_hint="app")
        with pytest.raises(InvalidRequest):
            await auth_service.complete_login(
                "wechat_miniapp", "mini-1", client_type_hint="watch"
            )

    @pytest.mark.asyncio
    async def test_config_disabled_between_initiate_and_complete(
        self, auth_service, make_config
    ):
        config = await make_config()
        started = await auth_service.initiate_authorization("github", "web", "login")
        await set_config_enabled(config.config_id, False)
        with pytest.raises(ConfigNotFound):
            await auth_service.complete_login("github", "ext-1", started.state)
        assert (await load_state(started.state)).consumed_at is None

    @pytest.mark.asyncio
    async def test_transport_error_leaves_no_trace(
        self, auth_service, make_config, audit_sink
    ):
        await make_config()
        started = await auth_service.initiate_authorization("github", "web", "login")
        with pytest.raises(ProviderTransportError) as exc_info:
            await auth_service.complete_login("github", "transport-error", started.state)
        assert exc_info.value.retryable
        assert (await load_state(started.state)).consumed_at is None
        assert await _user_count() == 0
        assert await _bound_rows() == 0
        failed = audit_sink.by_action("login")[-1]
        assert failed.result == "fail"
        assert failed.error_kind == "provider_transport_error"

        # The state is still redeemable with a fresh code until it expires.
        result = await auth_service.complete_login("github", "ext-1", started.state)
        assert result.is_new_user

    @pytest.mark.asyncio
    async def test_inactive_user(self, auth_service, make_config):
        await make_config()
        started = await auth_service.initiate_authorization("github", "web", "login")
        result = await auth_service.complete_login("github", "ext-1", started.state)
        async with get_session() as session:
            user = await session.get(User, result.user.user_id)
            user.active = False
            await session.commit()
        started = await auth_service.initiate_authorization("github", "web", "login")
        with pytest.raises(UserInactive):
            await auth_service.complete_login("github", "ext-1", started.state)
        assert (await load_state(started.state)).consumed_at is None

    @pytest.mark.asyncio
    async def test_missing_code(self, auth_service, make_config):
        await make_config()
        started = await auth_service.initiate_authorization("github", "web", "login")
        with pytest.raises(InvalidRequest):
            await auth_service.complete_login("github", "", started.state)

    @pytest.mark.asyncio
    async def test_concurrent_redemption_of_one_state(self, auth_service, make_config):
        await make_config()
        started = await auth_service.initiate_authorization("github", "web", "login")
        results = await asyncio.gather(
            *[auth_service.complete_login("github", "ext-1", started.state) for _ in range(5)],
            return_exceptions=True,
        )
        successes = [item for item in results if not isinstance(item, Exception)]
        failures = [item for item in results if isinstance(item, Exception)]
        assert len(successes) == 1
        assert all(isinstance(item, StateAlreadyUsed) for item in failures)
        assert await _bound_rows() == 1
        assert await _user_count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_logins_of_one_identity(self, auth_service, make_config):
        await make_config()
        states = [
            (await auth_service.initiate_authorization("github", "web", "login")).state
            for _ in range(4)
        ]
        results = await asyncio.gather(
            *[auth_service.complete_login("github", "ext-1", state) for state in states],
            return_exceptions=True,
        )
        for item in results:
            assert not isinstance(item, Exception) or isinstance(item, OAuthError)
        successes = [item for item in results if not isinstance(item, Exception)]
        assert successes
        assert len({item.user.user_id for item in successes}) == 1
        assert await _bound_rows(openid="ext-1") == 1
        assert await _user_count() == 1

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_mask_result(self, stub_registry, make_config):
        from authbridge.auth.service import OAuthAuthService

        class BrokenSink:
            def record(self, attempt):
                raise RuntimeError("audit store down")

        service = OAuthAuthService(providers=stub_registry, audit_sink=BrokenSink())
        await make_config()
        started = await service.initiate_authorization("github", "web", "login")
        result = await service.complete_login("github", "ext-1", started.state)
        assert result.is_new_user
        with pytest.raises(StateInvalid):
            await service.complete_login("github", "ext-1", started.state)

    @pytest.mark.asyncio
    async def test_session_issuer_is_delegated(self, stub_registry, audit_sink, make_config):
        from authbridge.auth.service import OAuthAuthService

        issuer = AsyncMock()
        issuer.issue_session_token.return_value = "opaque-session"
        service = OAuthAuthService(
            providers=stub_registry, session_issuer=issuer, audit_sink=audit_sink
        )
        await make_config()
        started = await service.initiate_authorization("github", "web", "login")
        result = await service.complete_login("github", "ext-1", started.state)
        assert result.session_token == "opaque-session"
        issuer.issue_session_token.assert_awaited_once()


class TestCompleteBind:
    async def _bind_state(self, service, user_id, platform="github", client_type="web"):
        started = await service.initiate_authorization(
            platform, client_type, "bind", user_id=user_id
        )
        return started.state

    @pytest.mark.asyncio
    async def test_bind(self, auth_service, make_config, make_user, audit_sink):
        config = await make_config()
        user = await make_user()
        state = await self._bind_state(auth_service, user.user_id)
        result = await auth_service.complete_bind(user.user_id, "github", "ext-9", state)
        assert result.binding.user_id == user.user_id
        assert result.binding.config_id == config.config_id
        assert result.binding.login_count == 0
        assert (await load_state(state)).consumed_at is not None
        assert audit_sink.by_action("bind")[-1].result == "success"

    @pytest.mark.asyncio
    async def test_identity_mismatch(self, auth_service, make_config, make_user, audit_sink):
        await make_config()
        alice, mallory = await make_user("alice"), await make_user("mallory")
        state = await self._bind_state(auth_service, alice.user_id)
        with pytest.raises(IdentityMismatch) as exc_info:
            await auth_service.complete_bind(mallory.user_id, "github", "ext-9", state)
        assert not exc_info.value.retryable
        assert (await load_state(state)).consumed_at is None
        assert await _bound_rows() == 0
        assert audit_sink.by_action("bind")[-1].error_kind == "identity_mismatch"

    @pytest.mark.asyncio
    async def test_state_required(self, auth_service, make_config, make_user):
        await make_config()
        user = await make_user()
        with pytest.raises(StateInvalid):
            await auth_service.complete_bind(user.user_id, "github", "ext-9", "")

    @pytest.mark.asyncio
    async def test_login_state_cannot_bind(self, auth_service, make_config, make_user):
        await make_config()
        user = await make_user()
        started = await auth_service.initiate_authorization("github", "web", "login")
        with pytest.raises(StateInvalid):
            await auth_service.complete_bind(user.user_id, "github", "ext-9", started.state)

    @pytest.mark.asyncio
    async def test_already_bound_elsewhere(self, auth_service, make_config, make_user):
        await make_config()
        alice, bob = await make_user("alice"), await make_user("bob")
        await auth_service.complete_bind(
            alice.user_id, "github", "ext-9", await self._bind_state(auth_service, alice.user_id)
        )
        with pytest.raises(AlreadyBoundElsewhere):
            await auth_service.complete_bind(
                bob.user_id, "github", "ext-9", await self._bind_state(auth_service, bob.user_id)
            )

    @pytest.mark.asyncio
    async def test_already_bound_by_self(self, auth_service, make_config, make_user):
        await make_config()
        alice = await make_user("alice")
        await auth_service.complete_bind(
            alice.user_id, "github", "ext-9", await self._bind_state(auth_service, alice.user_id)
        )
        with pytest.raises(AlreadyBoundBySelf):
            await auth_service.complete_bind(
                alice.user_id,
                "github",
                "ext-9",
                await self._bind_state(auth_service, alice.user_id),
            )
        with pytest.raises(AlreadyBoundBySelf):
            await auth_service.complete_bind(
                alice.user_id,
                "github",
                "ext-other",
                await self._bind_state(auth_service, alice.user_id),
            )
        assert await _bound_rows(user_id=alice.user_id) == 1

    @pytest.mark.asyncio
    async def test_bound_identity_logs_into_binder(self, auth_service, make_config, make_user):
        await make_config()
        alice = await make_user("alice")
        await auth_service.complete_bind(
            alice.user_id, "github", "ext-9", await self._bind_state(auth_service, alice.user_id)
        )
        started = await auth_service.initiate_authorization("github", "web", "login")
        result = await auth_service.complete_login("github", "ext-9", started.state)
        assert result.user.user_id == alice.user_id
        assert result.is_new_user is False
        assert result.binding.login_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_binds_of_one_identity(self, auth_service, make_config, make_user):
        await make_config()
        users = [await make_user(f"user-{idx}") for idx in range(5)]
        states = [await self._bind_state(auth_service, user.user_id) for user in users]
        results = await asyncio.gather(
            *[
                auth_service.complete_bind(user.user_id, "github", "ext-race", state)
                for user, state in zip(users, states)
            ],
            return_exceptions=True,
        )
        successes = [item for item in results if not isinstance(item, Exception)]
        failures = [item for item in results if isinstance(item, Exception)]
        assert len(successes) == 1
        assert all(isinstance(item, AlreadyBoundElsewhere) for item in failures)
        assert await _bound_rows(openid="ext-race") == 1


class TestUnbindAndList:
    @pytest.mark.asyncio
    async def test_unbind_twice(self, auth_service, make_config, audit_sink):
        await make_config()
        started = await auth_service.initiate_authorization("github", "web", "login")
        result = await auth_service.complete_login("github", "ext-1", started.state)
        user_id = result.user.user_id
        assert await auth_service.unbind(user_id, "github") is True
        with pytest.raises(NotBound):
            await auth_service.unbind(user_id, "github")
        assert [attempt.result for attempt in audit_sink.by_action("unbind")] == [
            "success",
            "fail",
        ]
        assert await auth_service.list_bindings(user_id) == []

    @pytest.mark.asyncio
    async def test_list_bindings(self, auth_service, make_config, make_user):
        await make_config("github")
        await make_config("wechat_mp")
        user = await make_user()
        for platform in ("github", "wechat_mp"):
            started = await auth_service.initiate_authorization(
                platform, "web", "bind", user_id=user.user_id
            )
            await auth_service.complete_bind(user.user_id, platform, f"{platform}-id", started.state)
        listed = await auth_service.list_bindings(user.user_id)
        assert sorted(item.platform for item in listed) == ["github", "wechat_mp"]
        status = await auth_service.binding_status(user.user_id, "github")
        assert status.openid == "github-id"
        assert await auth_service.binding_status(user.user_id, "gitee") is None

    @pytest.mark.asyncio
    async def test_relogin_after_unbind_reuses_account(self, auth_service, make_config):
        await make_config()
        started = await auth_service.initiate_authorization("github", "web", "login")
        first = await auth_service.complete_login("github", "ext-1", started.state)
        await auth_service.unbind(first.user.user_id, "github")
        started = await auth_service.initiate_authorization("github", "web", "login")
        second = await auth_service.complete_login("github", "ext-1", started.state)
        assert second.user.user_id == first.user.user_id
        assert second.binding.binding_id != first.binding.binding_id
        assert await _user_count() == 1


class TestRefreshToken:
    async def _login(self, service, platform="github", client_type="web", code="ext-1"):
        if platform == "wechat_miniapp":
            return await service.complete_login(platform, code)
        started = await service.initiate_authorization(platform, client_type, "login")
        return await service.complete_login(platform, code, started.state)

    @pytest.mark.asyncio
    async def test_refresh(self, auth_service, make_config, audit_sink):
        await make_config()
        result = await self._login(auth_service)
        refreshed = await auth_service.refresh_token(result.binding.binding_id)
        assert refreshed.access_token == "new-rt-ext-1"
        assert refreshed.expires_in == 3600
        from authbridge.binding.service import get_binding

        stored = await get_binding(result.binding.binding_id)
        assert stored.access_token == "new-rt-ext-1"
        assert stored.refresh_token == "rt-ext-1-2"
        assert audit_sink.by_action("refresh")[-1].result == "success"

    @pytest.mark.asyncio
    async def test_refresh_unsupported(self, auth_service, make_config):
        await make_config("wechat_miniapp", "miniapp")
        result = await self._login(auth_service, "wechat_miniapp")
        with pytest.raises(RefreshUnsupported) as exc_info:
            await auth_service.refresh_token(result.binding.binding_id)
        assert exc_info.value.kind == "refresh_unsupported"

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, auth_service, make_config):
        await make_config()
        result = await self._login(auth_service)
        async with get_session() as session:
            binding = await session.get(UserOAuthBinding, result.binding.binding_id)
            binding.refresh_token = None
            await session.commit()
        with pytest.raises(NoRefreshToken):
            await auth_service.refresh_token(result.binding.binding_id)

    @pytest.mark.asyncio
    async def test_refresh_checks_owner(self, auth_service, make_config):
        await make_config()
        result = await self._login(auth_service)
        with pytest.raises(NotBound):
            await auth_service.refresh_token(result.binding.binding_id, user_id="someone-else")
        with pytest.raises(NotBound):
            await auth_service.refresh_token("missing")


class TestMiniappProfile:
    @pytest.fixture
    def miniapp_service(self, audit_sink):
        registry = ProviderRegistry()
        registry.add("wechat_miniapp", WeChatMiniappProvider)
        return OAuthAuthService(providers=registry, audit_sink=audit_sink)

    @staticmethod
    def _exchange(openid="mini-1"):
        return patch.object(
            WeChatMiniappProvider,
            "exchange_code_for_identity",
            AsyncMock(
                return_value=ExternalIdentity(openid=openid, transient={"session_key": "key"})
            ),
        )

    @pytest.mark.asyncio
    async def test_login_with_profile(self, miniapp_service, make_config):
        await make_config("wechat_miniapp", "miniapp")
        raw = json.dumps({"nickName": "Mei", "gender": 2})
        signature = hashlib.sha1((raw + "key").encode()).hexdigest()
        with self._exchange():
            result = await miniapp_service.complete_login(
                "wechat_miniapp", "code", profile={"raw_data": raw, "signature": signature}
            )
        assert result.binding.nickname == "Mei"
        assert result.user.nickname == "Mei"

    @pytest.mark.asyncio
    async def test_malformed_profile_is_a_typed_failure(
        self, miniapp_service, make_config, audit_sink
    ):
        await make_config("wechat_miniapp", "miniapp")
        raw = "[1]"
        signature = hashlib.sha1((raw + "key").encode()).hexdigest()
        with self._exchange():
            with pytest.raises(ProviderProtocolError):
                await miniapp_service.complete_login(
                    "wechat_miniapp", "code", profile={"raw_data": raw, "signature": signature}
                )
            result = await miniapp_service.complete_login(
                "wechat_miniapp", "code", profile={"nickName": "n", "gender": "male"}
            )
        assert result.binding.nickname == "n"
        assert audit_sink.by_action("login")[0].error_kind == "provider_protocol_error"

    @pytest.mark.asyncio
    async def test_bind_with_profile(self, miniapp_service, make_config, make_user):
        await make_config("wechat_miniapp", "miniapp")
        user = await make_user()
        started = await miniapp_service.initiate_authorization(
            "wechat_miniapp", "miniapp", "bind", user_id=user.user_id
        )
        with self._exchange("mini-7"):
            result = await miniapp_service.complete_bind(
                user.user_id,
                "wechat_miniapp",
                "code",
                started.state,
                profile={"nickName": "Bound", "avatarUrl": "https://a/b.png"},
            )
        assert result.binding.openid == "mini-7"
        assert result.binding.nickname == "Bound"
        assert result.binding.avatar == "https://a/b.png"


class TestStateExpiringDuringExchange:
    @pytest.mark.asyncio
    async def test_login_reports_expiry(self, auth_service, make_config, audit_sink):
        await make_config()
        started = await auth_service.initiate_authorization("github", "web", "login")
        with patch(
            "authbridge.auth.service.utcnow",
            return_value=started.expires_at + timedelta(seconds=1),
        ):
            with pytest.raises(StateExpired) as exc_info:
                await auth_service.complete_login("github", "ext-1", started.state)
        assert exc_info.value.to_dict()["error"] == "state_invalid"
        assert audit_sink.by_action("login")[-1].error_kind == "state_expired"
        assert await _user_count() == 0

    @pytest.mark.asyncio
    async def test_bind_reports_expiry(self, auth_service, make_config, make_user):
        await make_config()
        user = await make_user()
        started = await auth_service.initiate_authorization(
            "github", "web", "bind", user_id=user.user_id
        )
        with patch(
            "authbridge.auth.service.utcnow",
            return_value=started.expires_at + timedelta(seconds=1),
        ):
            with pytest.raises(StateExpired):
                await auth_service.complete_bind(user.user_id, "github", "ext-9", started.state)
        assert await _bound_rows() == 0
