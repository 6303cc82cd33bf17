"""
Handshake state manager: issue, validate, consume and sweep state tokens.

The state token is the CSRF and replay guard of the redirect handshake. A state
is valid iff it exists, ``now < expires_at`` and ``consumed_at`` is null.
Redemption is a single conditional UPDATE, so of N concurrent consumers of the
same token exactly one observes a changed row.
"""

from datetime import datetime, timedelta
from typing import Optional
from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from authbridge.config import settings
from authbridge.constants import STATE_ACTIONS, STATE_ACTION_BIND
from authbridge.database import get_session
from authbridge.exceptions import InvalidRequest, StateAlreadyUsed, StateExpired, StateInvalid
from authbridge.handshake.schemas import OAuthAuthState
from authbridge.util import mask, utcnow


async def issue_state(
    config_id: str,
    platform: str,
    client_type: str,
    action: str,
    user_id: Optional[str] = None,
    redirect_target: Optional[str] = None,
    extra: Optional[dict] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> OAuthAuthState:
    """
    Persist a new state record and return it (``.state`` and ``.expires_at``).
    """
    if action not in STATE_ACTIONS:
        raise InvalidRequest(f"Invalid action: {action}")
    if (action == STATE_ACTION_BIND) != bool(user_id):
        raise InvalidRequest("user_id is required for bind and only for bind")
    now = now or utcnow()
    record = OAuthAuthState(
        state=OAuthAuthState.generate_state(),
        config_id=config_id,
        platform=platform,
        client_type=client_type,
        action=action,
        user_id=user_id,
        redirect_target=redirect_target,
        extra_data=extra or {},
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds or settings.state_ttl_seconds),
    )
    async with get_session() as session:
        session.add(record)
        await session.commit()
    return record


async def load_state(token: str) -> Optional[OAuthAuthState]:
    if not token:
        return None
    async with get_session() as session:
        return (
            await session.execute(select(OAuthAuthState).where(OAuthAuthState.state == token))
        ).scalar_one_or_none()


async def check_state(token: str, now: Optional[datetime] = None) -> OAuthAuthState:
    """
    Load a state and require it to be valid, raising the precise StateInvalid
    subclass otherwise. Callers must not expose which one to end users.
    """
    now = now or utcnow()
    record = await load_state(token)
    if not record:
        raise StateInvalid("not_found")
    reason = record.invalid_reason(now)
    if reason == "consumed":
        raise StateAlreadyUsed()
    if reason == "expired":
        raise StateExpired()
    return record


async def validate_state(token: str, now: Optional[datetime] = None) -> Optional[OAuthAuthState]:
    """
    Valid record or None, the reason is only logged.
    """
    try:
        return await check_state(token, now)
    except StateInvalid as exc:
        logger.info(f"State {mask(token)} is invalid: {exc.reason}")
        return None


async def consume_state(
    token: str,
    session: Optional[AsyncSession] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Atomically mark a valid state consumed. True for exactly one caller.

    When a session is passed the update joins the caller's transaction (and is
    rolled back with it), otherwise it is committed immediately.
    """
    now = now or utcnow()
    query = (
        update(OAuthAuthState)
        .where(
            OAuthAuthState.state == token,
            OAuthAuthState.consumed_at.is_(None),
            OAuthAuthState.expires_at > now,
        )
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    if session is not None:
        result = await session.execute(query)
        return result.rowcount == 1
    async with get_session() as own_session:
        result = await own_session.execute(query)
        await own_session.commit()
        return result.rowcount == 1


async def consume_failure(
    token: str, session: AsyncSession, now: Optional[datetime] = None
) -> StateInvalid:
    """
    Why consume_state refused a token, read back inside the same transaction.
    """
    now = now or utcnow()
    record = (
        await session.execute(select(OAuthAuthState).where(OAuthAuthState.state == token))
    ).scalar_one_or_none()
    if not record:
        return StateInvalid("not_found")
    if record.invalid_reason(now) == "expired":
        return StateExpired()
    return StateAlreadyUsed()


async def sweep_expired_states(now: Optional[datetime] = None) -> int:
    """
    Delete states past their expiry. Never touches a state that could still be
    redeemed: validity requires ``now < expires_at``, deletion ``expires_at <= now``.
    """
    now = now or utcnow()
    async with get_session() as session:
        result = await session.execute(
            delete(OAuthAuthState)
            .where(OAuthAuthState.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    if result.rowcount:
        logger.info(f"Swept {result.rowcount} expired OAuth states")
    return result.rowcount
