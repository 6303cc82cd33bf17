"""
Audit sink for federation attempts, plus the login statistics built on it.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Set
import backoff
from loguru import logger
from sqlalchemy import case, func, select
from sqlalchemy.exc import OperationalError
from authbridge.audit.schemas import AuditAttempt, OAuthLoginLog
from authbridge.constants import AUDIT_ACTION_LOGIN, AUDIT_MAX_TRIES, AUDIT_RESULT_SUCCESS
from authbridge.database import get_session
from authbridge.util import redact


class AuditSink(ABC):
    @abstractmethod
    def record(self, attempt: AuditAttempt):
        """
        Accept an attempt without blocking the caller. Must never raise.
        """


class DatabaseAuditSink(AuditSink):
    """
    Writes attempts to oauth_login_logs from background tasks, retrying
    transient database errors a few times before giving up with a log line.
    """

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()

    def record(self, attempt: AuditAttempt):
        try:
            task = asyncio.get_running_loop().create_task(self._write_safely(attempt))
        except RuntimeError as exc:
            logger.error(f"Unable to schedule audit write for {attempt.action}: {exc}")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self):
        """Wait for every scheduled write (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _write_safely(self, attempt: AuditAttempt):
        try:
            await self._write(attempt)
        except Exception as exc:
            logger.error(
                f"Failed to write audit record {attempt.platform}/{attempt.action}/"
                f"{attempt.result} for user {attempt.user_id}: {exc}"
            )

    @backoff.on_exception(
        backoff.expo,
        OperationalError,
        max_tries=AUDIT_MAX_TRIES,
        max_time=10,
    )
    async def _write(self, attempt: AuditAttempt):
        async with get_session() as session:
            session.add(
                OAuthLoginLog(
                    user_id=attempt.user_id,
                    config_id=attempt.config_id,
                    platform=attempt.platform,
                    action=attempt.action,
                    result=attempt.result,
                    error_kind=attempt.error_kind,
                    error_message=attempt.error_message,
                    openid=attempt.openid,
                    is_new_user=attempt.is_new_user,
                    ip_address=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    request_data=redact(attempt.request_data),
                    response_data=redact(attempt.response_data),
                    created_at=attempt.created_at,
                )
            )
            await session.commit()


async def list_attempts(
    user_id: Optional[str] = None,
    platform: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 100,
) -> List[OAuthLoginLog]:
    async with get_session() as session:
        query = select(OAuthLoginLog)
        if user_id:
            query = query.where(OAuthLoginLog.user_id == user_id)
        if platform:
            query = query.where(OAuthLoginLog.platform == platform)
        if action:
            query = query.where(OAuthLoginLog.action == action)
        query = query.order_by(OAuthLoginLog.created_at.desc()).limit(limit)
        return (await session.execute(query)).scalars().all()


async def _login_stats(*conditions) -> dict:
    is_success = OAuthLoginLog.result == AUDIT_RESULT_SUCCESS
    async with get_session() as session:
        total, success, last_success = (
            await session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(case((is_success, 1), else_=0)), 0),
                    func.max(case((is_success, OAuthLoginLog.created_at), else_=None)),
                ).where(OAuthLoginLog.action == AUDIT_ACTION_LOGIN, *conditions)
            )
        ).one()
    total, success = int(total or 0), int(success or 0)
    if isinstance(last_success, str):
        last_success = datetime.fromisoformat(last_success)
    return {
        "total_attempts": total,
        "success_count": success,
        "failed_count": total - success,
        "success_rate": round(success / total * 100, 2) if total else 0.0,
        "last_success_login": last_success,
    }


async def user_platform_stats(user_id: str, platform: str) -> dict:
    return await _login_stats(
        OAuthLoginLog.user_id == user_id, OAuthLoginLog.platform == platform
    )


async def platform_stats(
    platform: str, start: Optional[datetime] = None, end: Optional[datetime] = None
) -> dict:
    conditions = [OAuthLoginLog.platform == platform]
    if start:
        conditions.append(OAuthLoginLog.created_at >= start)
    if end:
        conditions.append(OAuthLoginLog.created_at <= end)
    return await _login_stats(*conditions)
