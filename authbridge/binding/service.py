"""
Binding ledger: durable links between local users and external identities.

Uniqueness among bound rows is enforced by partial unique indexes, callers
insert and translate IntegrityError via ``conflict_for``. Unbinding is a status
flip, rows (and their counters) are never deleted here.
"""

from datetime import datetime
from typing import List, Optional
from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from authbridge.binding.schemas import BindingStatus, BindingSummary, UserOAuthBinding
from authbridge.database import get_session
from authbridge.exceptions import AlreadyBoundBySelf, AlreadyBoundElsewhere, OAuthError
from authbridge.platforms import platform_name
from authbridge.providers.base import ExternalIdentity, TokenPair
from authbridge.util import mask, utcnow

BOUND = BindingStatus.BOUND.value
UNBOUND = BindingStatus.UNBOUND.value


async def get_binding(binding_id: str) -> Optional[UserOAuthBinding]:
    async with get_session() as session:
        return (
            await session.execute(
                select(UserOAuthBinding).where(UserOAuthBinding.binding_id == binding_id)
            )
        ).scalar_one_or_none()


async def get_binding_by_config_and_openid(
    session: AsyncSession, config_id: str, openid: str
) -> Optional[UserOAuthBinding]:
    return (
        await session.execute(
            select(UserOAuthBinding).where(
                UserOAuthBinding.config_id == config_id,
                UserOAuthBinding.openid == openid,
                UserOAuthBinding.status == BOUND,
            )
        )
    ).scalar_one_or_none()


async def get_bound_by_user_and_config(
    session: AsyncSession, user_id: str, config_id: str
) -> Optional[UserOAuthBinding]:
    return (
        await session.execute(
            select(UserOAuthBinding).where(
                UserOAuthBinding.user_id == user_id,
                UserOAuthBinding.config_id == config_id,
                UserOAuthBinding.status == BOUND,
            )
        )
    ).scalar_one_or_none()


async def get_bound_by_user_and_platform(
    user_id: str, platform: str
) -> Optional[UserOAuthBinding]:
    async with get_session() as session:
        return (
            (
                await session.execute(
                    select(UserOAuthBinding)
                    .where(
                        UserOAuthBinding.user_id == user_id,
                        UserOAuthBinding.platform == platform,
                        UserOAuthBinding.status == BOUND,
                    )
                    .order_by(UserOAuthBinding.last_login_time.desc())
                )
            )
            .scalars()
            .first()
        )


def _apply_profile(binding: UserOAuthBinding, identity: ExternalIdentity):
    profile = identity.profile()
    for key, value in profile.items():
        if value or not getattr(binding, key, None):
            setattr(binding, key, value)
    if identity.unionid:
        binding.unionid = identity.unionid
    binding.oauth_info = identity.raw


async def create_binding(
    session: AsyncSession,
    user_id: str,
    config_id: str,
    platform: str,
    identity: ExternalIdentity,
    login: bool = False,
    now: Optional[datetime] = None,
) -> UserOAuthBinding:
    """
    Insert a bound row inside the caller's transaction. The flush surfaces
    uniqueness violations as IntegrityError for the caller to translate.
    """
    now = now or utcnow()
    binding = UserOAuthBinding(
        user_id=user_id,
        config_id=config_id,
        platform=platform,
        openid=identity.openid,
        bind_time=now,
        last_login_time=now if login else None,
        login_count=1 if login else 0,
        status=BOUND,
        updated_at=now,
    )
    _apply_profile(binding, identity)
    binding.set_tokens(identity.access_token, identity.refresh_token, identity.expires_in, now)
    session.add(binding)
    await session.flush()
    logger.info(
        f"Bound {platform} identity {mask(identity.openid)} to user {user_id} "
        f"(binding_id={binding.binding_id})"
    )
    return binding


def record_login(
    binding: UserOAuthBinding, identity: ExternalIdentity, now: Optional[datetime] = None
):
    """
    Refresh the profile snapshot, tokens and counters of a returning identity.
    """
    now = now or utcnow()
    _apply_profile(binding, identity)
    if identity.access_token:
        binding.set_tokens(
            identity.access_token, identity.refresh_token, identity.expires_in, now
        )
    binding.last_login_time = now
    binding.login_count = (binding.login_count or 0) + 1
    binding.updated_at = now


async def update_tokens(
    binding_id: str, tokens: TokenPair, now: Optional[datetime] = None
) -> Optional[UserOAuthBinding]:
    now = now or utcnow()
    async with get_session() as session:
        binding = (
            await session.execute(
                select(UserOAuthBinding).where(UserOAuthBinding.binding_id == binding_id)
            )
        ).scalar_one_or_none()
        if not binding:
            return None
        binding.set_tokens(tokens.access_token, tokens.refresh_token, tokens.expires_in, now)
        binding.updated_at = now
        await session.commit()
        return binding


async def conflict_for(
    session: AsyncSession, config_id: str, openid: str, user_id: Optional[str]
) -> OAuthError:
    """
    Explain a uniqueness violation on insert: the identity is held by another
    user, or this user already holds a binding under the configuration.
    """
    existing = await get_binding_by_config_and_openid(session, config_id, openid)
    if existing and existing.user_id != user_id:
        return AlreadyBoundElsewhere(
            f"{mask(openid)} on config {config_id} is bound to user {existing.user_id}"
        )
    return AlreadyBoundBySelf(f"User {user_id} already holds a binding on config {config_id}")


async def unbind(user_id: str, platform: str, now: Optional[datetime] = None) -> int:
    """
    Flip every bound row of the user on the platform to unbound, returns the count.
    """
    now = now or utcnow()
    async with get_session() as session:
        result = await session.execute(
            update(UserOAuthBinding)
            .where(
                UserOAuthBinding.user_id == user_id,
                UserOAuthBinding.platform == platform,
                UserOAuthBinding.status == BOUND,
            )
            .values(status=UNBOUND, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    if result.rowcount:
        logger.info(f"Unbound {platform} for user {user_id} ({result.rowcount} bindings)")
    return result.rowcount


async def unbind_all_for_user(user_id: str, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    async with get_session() as session:
        result = await session.execute(
            update(UserOAuthBinding)
            .where(UserOAuthBinding.user_id == user_id, UserOAuthBinding.status == BOUND)
            .values(status=UNBOUND, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    logger.info(f"Unbound all platforms for user {user_id} ({result.rowcount} bindings)")
    return result.rowcount


async def restore_binding(
    binding_id: str, now: Optional[datetime] = None
) -> Optional[UserOAuthBinding]:
    """
    Flip an unbound row back to bound, still subject to the uniqueness indexes.
    """
    now = now or utcnow()
    async with get_session() as session:
        binding = (
            await session.execute(
                select(UserOAuthBinding).where(UserOAuthBinding.binding_id == binding_id)
            )
        ).scalar_one_or_none()
        if not binding:
            return None
        if binding.is_bound():
            return binding
        config_id, openid, user_id = binding.config_id, binding.openid, binding.user_id
        binding.status = BOUND
        binding.updated_at = now
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise await conflict_for(session, config_id, openid, user_id)
        logger.info(f"Restored binding {binding_id} for user {binding.user_id}")
        return binding


async def list_user_bindings(user_id: str) -> List[BindingSummary]:
    async with get_session() as session:
        bindings = (
            (
                await session.execute(
                    select(UserOAuthBinding)
                    .where(UserOAuthBinding.user_id == user_id, UserOAuthBinding.status == BOUND)
                    .order_by(
                        UserOAuthBinding.last_login_time.desc(),
                        UserOAuthBinding.bind_time.desc(),
                    )
                )
            )
            .scalars()
            .all()
        )
    return [BindingSummary.model_validate(binding) for binding in bindings]


async def get_bindings_by_unionid(unionid: str) -> List[BindingSummary]:
    if not unionid:
        return []
    async with get_session() as session:
        bindings = (
            (
                await session.execute(
                    select(UserOAuthBinding).where(
                        UserOAuthBinding.unionid == unionid,
                        UserOAuthBinding.status == BOUND,
                    )
                )
            )
            .scalars()
            .all()
        )
    return [BindingSummary.model_validate(binding) for binding in bindings]


async def has_user_bound_platform(user_id: str, platform: str) -> bool:
    return await get_bound_by_user_and_platform(user_id, platform) is not None


async def user_bound_platforms(user_id: str) -> List[str]:
    async with get_session() as session:
        result = await session.execute(
            select(UserOAuthBinding.platform)
            .where(UserOAuthBinding.user_id == user_id, UserOAuthBinding.status == BOUND)
            .distinct()
        )
        return sorted(result.scalars().all())


async def binding_stats(platform: Optional[str] = None) -> dict:
    async with get_session() as session:
        query = (
            select(UserOAuthBinding.platform, func.count())
            .where(UserOAuthBinding.status == BOUND)
            .group_by(UserOAuthBinding.platform)
        )
        if platform:
            query = query.where(UserOAuthBinding.platform == platform)
        rows = (await session.execute(query)).all()
    by_platform = {
        row_platform: {"name": platform_name(row_platform), "count": count}
        for row_platform, count in rows
    }
    return {
        "total": sum(item["count"] for item in by_platform.values()),
        "platforms": by_platform,
    }
