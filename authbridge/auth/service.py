"""
Auth orchestrator: initiate a handshake, complete it as a login or a bind,
unbind, list bindings and refresh third-party tokens.

Ordering rules of the completion paths:
  * the state is checked (read only) before any network call,
  * the provider exchange happens before any local mutation, so a provider
    failure or cancellation leaves nothing to undo and the state unconsumed,
  * state consumption, user creation and binding insert share one transaction
    and commit or roll back together.
"""

import hashlib
from functools import lru_cache
from typing import List, Optional
from loguru import logger
from sqlalchemy.exc import IntegrityError
from authbridge.audit.schemas import AuditAttempt
from authbridge.audit.service import AuditSink, DatabaseAuditSink
from authbridge.auth.response import (
    AuthorizationResponse,
    BindResponse,
    LoginResponse,
    RefreshResponse,
    UserSummary,
)
from authbridge.binding import service as bindings
from authbridge.binding.schemas import BindingSummary
from authbridge.constants import (
    AUDIT_ACTION_AUTHORIZE,
    AUDIT_ACTION_BIND,
    AUDIT_ACTION_LOGIN,
    AUDIT_ACTION_REFRESH,
    AUDIT_ACTION_UNBIND,
    AUDIT_RESULT_FAIL,
    AUDIT_RESULT_SUCCESS,
    STATE_ACTION_BIND,
    STATE_ACTION_LOGIN,
    STATE_ACTIONS,
)
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
    ProviderUnsupported,
    RefreshUnsupported,
    StateInvalid,
    UnsupportedPlatform,
    UserInactive,
)
from authbridge.handshake.schemas import OAuthAuthState
from authbridge.handshake.service import check_state, consume_failure, consume_state, issue_state
from authbridge.oauth_config.schemas import ResolvedConfig
from authbridge.oauth_config.service import get_config_by_id, resolve_enabled_config
from authbridge.platforms import (
    STATELESS_LOGIN_PLATFORMS,
    default_client_type,
    is_valid_client_type,
)
from authbridge.providers import ProviderRegistry, registry as default_registry
from authbridge.providers.base import ExternalIdentity, OAuthProvider
from authbridge.user.schemas import ProfileHints, User
from authbridge.user.service import DatabaseUserDirectory, UserDirectory
from authbridge.user.tokens import SessionIssuer
from authbridge.util import mask, utcnow


def external_key(config_id: str, openid: str) -> str:
    """
    Idempotency key for the account created from an external identity.
    """
    return hashlib.sha256(f"{config_id}:{openid}".encode()).hexdigest()


class OAuthAuthService:
    def __init__(
        self,
        providers: Optional[ProviderRegistry] = None,
        user_directory: Optional[UserDirectory] = None,
        session_issuer: Optional[SessionIssuer] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.providers = providers or default_registry
        self.users = user_directory or DatabaseUserDirectory()
        self.sessions = session_issuer or SessionIssuer()
        self.audit = audit_sink or DatabaseAuditSink()

    def _record(self, attempt: AuditAttempt):
        try:
            self.audit.record(attempt)
        except Exception as exc:
            logger.error(f"Audit sink rejected {attempt.action} attempt: {exc}")

    def _record_failure(self, action: str, platform: str, exc: Exception, **fields):
        if isinstance(exc, StateInvalid):
            logger.info(f"{action} on {platform} rejected, state {exc.reason}")
        elif isinstance(exc, OAuthError):
            logger.warning(f"{action} on {platform} failed: {exc.kind}: {exc.message}")
        else:
            logger.error(f"{action} on {platform} failed unexpectedly: {exc!r}")
        self._record(
            AuditAttempt(
                platform=platform,
                action=action,
                result=AUDIT_RESULT_FAIL,
                error_kind=getattr(exc, "kind", type(exc).__name__),
                error_message=getattr(exc, "message", str(exc)),
                **fields,
            )
        )

    def _require_platform(self, platform: str):
        if not self.providers.supports(platform):
            raise UnsupportedPlatform(f"Unsupported OAuth platform: {platform}")

    def _build_provider(self, config: ResolvedConfig) -> OAuthProvider:
        return self.providers.build(config)

    async def _redeemable_state(
        self, token: str, platform: str, action: str
    ) -> OAuthAuthState:
        record = await check_state(token)
        if record.platform != platform:
            raise StateInvalid("platform_mismatch")
        if record.action != action:
            raise StateInvalid("action_mismatch")
        return record

    async def _active_user(self, user_id: str) -> User:
        user = await self.users.find_user_by_id(user_id)
        if not user or not user.is_active():
            raise UserInactive(f"User {user_id} is missing or disabled")
        return user

    async def initiate_authorization(
        self,
        platform: str,
        client_type: str,
        action: str = STATE_ACTION_LOGIN,
        user_id: Optional[str] = None,
        redirect_url: Optional[str] = None,
        extra: Optional[dict] = None,
        options: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthorizationResponse:
        """
        Issue a state for (platform, client_type, action) and build the URL to
        redirect to (empty for platforms completed by a native SDK).
        """
        config_id = None
        try:
            if action not in STATE_ACTIONS:
                raise InvalidRequest(f"Invalid action: {action}")
            if action == STATE_ACTION_BIND and not user_id:
                raise InvalidRequest("user_id is required to bind an account")
            if not is_valid_client_type(client_type):
                raise InvalidRequest(f"Invalid client type: {client_type}")
            self._require_platform(platform)
            config = await resolve_enabled_config(platform, client_type)
            if not config:
                raise ConfigNotFound(f"No enabled OAuth config for {platform}/{client_type}")
            config_id = config.config_id
            provider = self._build_provider(config)
            record = await issue_state(
                config_id=config.config_id,
                platform=platform,
                client_type=client_type,
                action=action,
                user_id=user_id if action == STATE_ACTION_BIND else None,
                redirect_target=redirect_url,
                extra=extra,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            auth_url = await provider.build_authorization_url(record.state, options)
        except Exception as exc:
            self._record_failure(
                AUDIT_ACTION_AUTHORIZE,
                platform,
                exc,
                user_id=user_id,
                config_id=config_id,
                ip_address=ip_address,
                user_agent=user_agent,
                request_data={"client_type": client_type, "action": action},
            )
            raise

        logger.info(
            f"Issued {action} state {mask(record.state)} for {platform}/{client_type} "
            f"(config {config_id}, expires {record.expires_at.isoformat()})"
        )
        self._record(
            AuditAttempt(
                platform=platform,
                action=AUDIT_ACTION_AUTHORIZE,
                result=AUDIT_RESULT_SUCCESS,
                user_id=user_id,
                config_id=config_id,
                ip_address=ip_address,
                user_agent=user_agent,
                request_data={"client_type": client_type, "action": action},
                response_data={"has_auth_url": bool(auth_url)},
            )
        )
        return AuthorizationResponse(
            auth_url=auth_url,
            state=record.state,
            expires_at=record.expires_at,
            platform=platform,
            client_type=client_type,
        )

    async def _login_config(
        self, platform: str, state: Optional[str], client_type_hint: Optional[str]
    ):
        """
        Configuration and state record for a login. Without a state the login
        is only accepted for STATELESS_LOGIN_PLATFORMS (SDK flows whose code is
        itself single-use and short-lived), with the client type taken from the
        hint or the platform default.
        """
        if state:
            record = await self._redeemable_state(state, platform, STATE_ACTION_LOGIN)
            config = await get_config_by_id(record.config_id)
            if not config:
                raise ConfigNotFound(
                    f"OAuth config {record.config_id} for {platform} was disabled or removed"
                )
            return config, record
        if platform not in STATELESS_LOGIN_PLATFORMS:
            raise StateInvalid("missing")
        client_type = client_type_hint or default_client_type(platform)
        if not is_valid_client_type(client_type):
            raise InvalidRequest(f"Invalid client type: {client_type}")
        config = await resolve_enabled_config(platform, client_type)
        if not config:
            raise ConfigNotFound(f"No enabled OAuth config for {platform}/{client_type}")
        return config, None

    async def _persist_login(
        self,
        config: ResolvedConfig,
        identity: ExternalIdentity,
        state: Optional[str],
    ):
        async with get_session() as session:
            now = utcnow()
            if state and not await consume_state(state, session=session, now=now):
                raise await consume_failure(state, session, now)
            binding = await bindings.get_binding_by_config_and_openid(
                session, config.config_id, identity.openid
            )
            if binding:
                user = await self._active_user(binding.user_id)
                bindings.record_login(binding, identity)
                is_new_user = False
            else:
                user = await self.users.create_user_for_external_identity(
                    session,
                    ProfileHints(
                        external_key=external_key(config.config_id, identity.openid),
                        platform=config.platform,
                        nickname=identity.nickname or None,
                        avatar=identity.avatar or None,
                    ),
                )
                if not user.is_active():
                    raise UserInactive(f"User {user.user_id} is disabled")
                binding = await bindings.create_binding(
                    session,
                    user.user_id,
                    config.config_id,
                    config.platform,
                    identity,
                    login=True,
                )
                is_new_user = True
            await session.commit()
            return user, binding, is_new_user

    async def complete_login(
        self,
        platform: str,
        code: str,
        state: Optional[str] = None,
        client_type_hint: Optional[str] = None,
        profile: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResponse:
        """
        Exchange the code, then reuse or create the local user and its binding.
        """
        config = identity = None
        try:
            if not code:
                raise InvalidRequest("Missing authorization code")
            self._require_platform(platform)
            config, record = await self._login_config(platform, state, client_type_hint)
            provider = self._build_provider(config)
            identity = await provider.exchange_code_for_identity(code)
            if profile:
                identity = provider.enrich_identity(identity, profile)
            try:
                user, binding, is_new_user = await self._persist_login(config, identity, state)
            except IntegrityError:
                # Lost a race against a concurrent first login of the same
                # identity; the rolled back attempt is replayed once as a
                # returning login.
                logger.warning(
                    f"Concurrent first login for {platform} {mask(identity.openid)}, retrying"
                )
                try:
                    user, binding, is_new_user = await self._persist_login(
                        config, identity, state
                    )
                except IntegrityError as exc:
                    raise AlreadyBoundElsewhere(
                        f"{mask(identity.openid)} could not be bound on config {config.config_id}"
                    ) from exc
            token = await self.sessions.issue_session_token(user)
        except Exception as exc:
            self._record_failure(
                AUDIT_ACTION_LOGIN,
                platform,
                exc,
                config_id=config.config_id if config else None,
                openid=identity.openid if identity else None,
                ip_address=ip_address,
                user_agent=user_agent,
                request_data={"code": code, "state": state, "client_type": client_type_hint},
            )
            raise

        summary = BindingSummary.model_validate(binding)
        logger.success(
            f"{platform} login for user {user.user_id} "
            f"(new_user={is_new_user}, login_count={binding.login_count})"
        )
        self._record(
            AuditAttempt(
                platform=platform,
                action=AUDIT_ACTION_LOGIN,
                result=AUDIT_RESULT_SUCCESS,
                user_id=user.user_id,
                config_id=config.config_id,
                openid=identity.openid,
                is_new_user=is_new_user,
                ip_address=ip_address,
                user_agent=user_agent,
                request_data={"code": code, "state": state, "client_type": client_type_hint},
                response_data={"binding_id": summary.binding_id, "is_new_user": is_new_user},
            )
        )
        return LoginResponse(
            session_token=token,
            user=UserSummary.model_validate(user),
            is_new_user=is_new_user,
            binding=summary,
            redirect_target=record.redirect_target if record else None,
        )

    async def complete_bind(
        self,
        user_id: str,
        platform: str,
        code: str,
        state: str,
        profile: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> BindResponse:
        """
        Attach an external identity to an authenticated account. The state is
        mandatory and must have been issued for this very user. An optional
        client profile enriches the identity as on login.
        """
        config = identity = None
        try:
            if not user_id:
                raise InvalidRequest("user_id is required to bind an account")
            if not code:
                raise InvalidRequest("Missing authorization code")
            if not state:
                raise StateInvalid("missing")
            self._require_platform(platform)
            record = await self._redeemable_state(state, platform, STATE_ACTION_BIND)
            if record.user_id != user_id:
                logger.warning(
                    f"Bind state {mask(state)} issued for user {record.user_id} "
                    f"redeemed by user {user_id} from {ip_address}"
                )
                raise IdentityMismatch(
                    f"State issued for {record.user_id}, presented by {user_id}"
                )
            await self._active_user(user_id)
            config = await get_config_by_id(record.config_id)
            if not config:
                raise ConfigNotFound(
                    f"OAuth config {record.config_id} for {platform} was disabled or removed"
                )
            provider = self._build_provider(config)
            identity = await provider.exchange_code_for_identity(code)
            if profile:
                identity = provider.enrich_identity(identity, profile)

            async with get_session() as session:
                now = utcnow()
                if not await consume_state(state, session=session, now=now):
                    raise await consume_failure(state, session, now)
                existing = await bindings.get_binding_by_config_and_openid(
                    session, config.config_id, identity.openid
                )
                if existing and existing.user_id != user_id:
                    raise AlreadyBoundElsewhere(
                        f"{mask(identity.openid)} is bound to user {existing.user_id}"
                    )
                if existing or await bindings.get_bound_by_user_and_config(
                    session, user_id, config.config_id
                ):
                    raise AlreadyBoundBySelf(
                        f"User {user_id} already has a binding on config {config.config_id}"
                    )
                try:
                    binding = await bindings.create_binding(
                        session, user_id, config.config_id, platform, identity
                    )
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    raise await bindings.conflict_for(
                        session, config.config_id, identity.openid, user_id
                    )
        except Exception as exc:
            self._record_failure(
                AUDIT_ACTION_BIND,
                platform,
                exc,
                user_id=user_id,
                config_id=config.config_id if config else None,
                openid=identity.openid if identity else None,
                ip_address=ip_address,
                user_agent=user_agent,
                request_data={"code": code, "state": state},
            )
            raise

        summary = BindingSummary.model_validate(binding)
        logger.success(f"User {user_id} bound {platform} (binding_id={summary.binding_id})")
        self._record(
            AuditAttempt(
                platform=platform,
                action=AUDIT_ACTION_BIND,
                result=AUDIT_RESULT_SUCCESS,
                user_id=user_id,
                config_id=config.config_id,
                openid=identity.openid,
                ip_address=ip_address,
                user_agent=user_agent,
                request_data={"code": code, "state": state},
                response_data={"binding_id": summary.binding_id},
            )
        )
        return BindResponse(binding=summary)

    async def unbind(
        self,
        user_id: str,
        platform: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        try:
            if not await bindings.unbind(user_id, platform):
                raise NotBound(f"User {user_id} has no {platform} binding")
        except Exception as exc:
            self._record_failure(
                AUDIT_ACTION_UNBIND,
                platform,
                exc,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        self._record(
            AuditAttempt(
                platform=platform,
                action=AUDIT_ACTION_UNBIND,
                result=AUDIT_RESULT_SUCCESS,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        return True

    async def list_bindings(self, user_id: str) -> List[BindingSummary]:
        return await bindings.list_user_bindings(user_id)

    async def binding_status(self, user_id: str, platform: str) -> Optional[BindingSummary]:
        binding = await bindings.get_bound_by_user_and_platform(user_id, platform)
        return BindingSummary.model_validate(binding) if binding else None

    async def refresh_token(
        self,
        binding_id: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshResponse:
        """
        Refresh the third-party access token of a binding. When user_id is
        given, the binding must belong to that user.
        """
        binding = None
        try:
            binding = await bindings.get_binding(binding_id)
            if not binding or not binding.is_bound() or (user_id and binding.user_id != user_id):
                raise NotBound(f"Binding {binding_id} not found for user {user_id}")
            if not binding.refresh_token:
                raise NoRefreshToken(f"Binding {binding_id} has no refresh token")
            config = await get_config_by_id(binding.config_id)
            if not config:
                raise ConfigNotFound(
                    f"OAuth config {binding.config_id} for {binding.platform} was disabled or removed"
                )
            provider = self._build_provider(config)
            try:
                tokens = await provider.refresh_access_token(binding.refresh_token)
            except ProviderUnsupported as exc:
                raise RefreshUnsupported(
                    f"{binding.platform} cannot refresh tokens: {exc.message}"
                ) from exc
            await bindings.update_tokens(binding_id, tokens)
        except Exception as exc:
            self._record_failure(
                AUDIT_ACTION_REFRESH,
                binding.platform if binding else "unknown",
                exc,
                user_id=binding.user_id if binding else user_id,
                config_id=binding.config_id if binding else None,
                ip_address=ip_address,
                user_agent=user_agent,
                request_data={"binding_id": binding_id},
            )
            raise
        self._record(
            AuditAttempt(
                platform=binding.platform,
                action=AUDIT_ACTION_REFRESH,
                result=AUDIT_RESULT_SUCCESS,
                user_id=binding.user_id,
                config_id=binding.config_id,
                openid=binding.openid,
                ip_address=ip_address,
                user_agent=user_agent,
                request_data={"binding_id": binding_id},
            )
        )
        return RefreshResponse(access_token=tokens.access_token, expires_in=tokens.expires_in)


@lru_cache(maxsize=1)
def get_auth_service() -> OAuthAuthService:
    return OAuthAuthService()
