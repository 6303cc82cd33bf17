import asyncio
import socket
import traceback
from typing import Any, Callable
from loguru import logger
import redis.asyncio as redis
from redis.exceptions import RedisError


FAIL_OPEN_EXCEPTIONS = (
    RedisError,
    ConnectionError,
    TimeoutError,
    socket.timeout,
    socket.gaierror,
    OSError,
    asyncio.TimeoutError,
)


class SafeRedis:
    """
    Fail-open wrapper for redis.asyncio.Redis, so a cache outage degrades to a cache miss.
    """

    def __init__(self, client: redis.Redis, *, timeout: float = 2.5, default: Any = None):
        self.default = default
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "SafeRedis":
        return cls(redis.Redis.from_url(url), **kwargs)

    @property
    def client(self) -> redis.Redis:
        return self._client

    def __getattr__(self, name: str) -> Callable[..., Any]:
        attr = getattr(self._client, name)
        if not callable(attr):
            return attr

        async def safe_call(*args, **kwargs):
            try:
                result = attr(*args, **kwargs)
                if asyncio.iscoroutine(result):
                    return await asyncio.wait_for(result, self.timeout)
                return result
            except FAIL_OPEN_EXCEPTIONS as exc:
                error_detail = str(exc)
                if not error_detail.strip():
                    error_detail = traceback.format_exc()
                logger.error(f"SafeRedis: fail-open on {name}: {error_detail}")
                return self.default

        return safe_call

    async def close(self):
        try:
            await self._client.aclose()
        except FAIL_OPEN_EXCEPTIONS as exc:
            logger.warning(f"SafeRedis: close() fail-open: {exc}")
