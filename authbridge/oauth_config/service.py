"""
Credential store: resolution of enabled OAuth configurations.
"""

from typing import Optional
from loguru import logger
from sqlalchemy import select
from authbridge.config import settings
from authbridge.constants import CONFIG_CACHE_PREFIX, CONFIG_NEGATIVE_CACHE_SECONDS
from authbridge.database import get_session
from authbridge.oauth_config.schemas import OAuthConfig, OAuthConfigCreateRequest, ResolvedConfig


def _cache_key(platform: str, client_type: str) -> str:
    return f"{CONFIG_CACHE_PREFIX}:{platform}:{client_type}"


def find_enabled_by_platform_and_client_type(platform: str, client_type: str):
    """
    Enabled configurations for a surface, best candidate first: highest priority,
    then most recently created, then config_id so the order is total.
    """
    return (
        select(OAuthConfig)
        .where(
            OAuthConfig.platform == platform,
            OAuthConfig.client_type == client_type,
            OAuthConfig.enabled.is_(True),
        )
        .order_by(
            OAuthConfig.priority.desc(),
            OAuthConfig.created_at.desc(),
            OAuthConfig.config_id.desc(),
        )
    )


async def resolve_enabled_config(platform: str, client_type: str) -> Optional[ResolvedConfig]:
    """
    Resolve the configuration used at runtime for (platform, client_type).

    Only the config_id is cached, the row itself is always reloaded with the
    enabled predicate so a disabled configuration stops resolving immediately.
    """
    cache_key = _cache_key(platform, client_type)
    cached = await settings.redis_client.get(cache_key)
    async with get_session() as session:
        if cached:
            config_id = cached.decode() if isinstance(cached, bytes) else cached
            if config_id == "__none__":
                return None
            config = (
                await session.execute(
                    select(OAuthConfig).where(
                        OAuthConfig.config_id == config_id,
                        OAuthConfig.enabled.is_(True),
                    )
                )
            ).scalar_one_or_none()
            if config:
                return ResolvedConfig.model_validate(config)
            # Deleted or disabled since it was cached.
            await settings.redis_client.delete(cache_key)

        candidates = (
            (
                await session.execute(
                    find_enabled_by_platform_and_client_type(platform, client_type).limit(2)
                )
            )
            .scalars()
            .all()
        )
        if not candidates:
            await settings.redis_client.set(
                cache_key, "__none__", ex=CONFIG_NEGATIVE_CACHE_SECONDS
            )
            return None
        if len(candidates) > 1:
            logger.warning(
                f"Multiple enabled OAuth configs for {platform}/{client_type}, "
                f"using {candidates[0].config_id} (priority={candidates[0].priority})"
            )
        config = candidates[0]
        await settings.redis_client.set(
            cache_key, config.config_id, ex=settings.config_cache_ttl_seconds
        )
        return ResolvedConfig.model_validate(config)


async def get_config_by_id(config_id: str, enabled_only: bool = True) -> Optional[ResolvedConfig]:
    async with get_session() as session:
        query = select(OAuthConfig).where(OAuthConfig.config_id == config_id)
        if enabled_only:
            query = query.where(OAuthConfig.enabled.is_(True))
        config = (await session.execute(query)).scalar_one_or_none()
        return ResolvedConfig.model_validate(config) if config else None


async def has_enabled_config(platform: str, client_type: str) -> bool:
    return await resolve_enabled_config(platform, client_type) is not None


async def invalidate_config_cache(platform: str, client_type: str):
    """Drop the cached resolution, called on every admin edit."""
    await settings.redis_client.delete(_cache_key(platform, client_type))


async def create_config(args: OAuthConfigCreateRequest) -> OAuthConfig:
    async with get_session() as session:
        config = OAuthConfig(**args.model_dump())
        session.add(config)
        await session.commit()
        await session.refresh(config)
    await invalidate_config_cache(config.platform, config.client_type)
    logger.info(f"Created OAuth config {config.config_id} for {config.platform}/{config.client_type}")
    return config


async def set_config_enabled(config_id: str, enabled: bool) -> bool:
    async with get_session() as session:
        config = (
            await session.execute(select(OAuthConfig).where(OAuthConfig.config_id == config_id))
        ).scalar_one_or_none()
        if not config:
            return False
        config.enabled = enabled
        await session.commit()
        platform, client_type = config.platform, config.client_type
    await invalidate_config_cache(platform, client_type)
    logger.info(f"OAuth config {config_id} {'enabled' if enabled else 'disabled'}")
    return True
