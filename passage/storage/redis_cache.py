from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCounterStore:
    """Redis-backed counters for the attempt limiter."""

    # Increment and arm the expiry in one step so a crash between the two
    # commands cannot leave a counter that never expires.
    _INCREMENT_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if ttl and ttl > 0 and value == 1 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[int]:
        raw = await self.client.get(key)
        return int(raw) if raw is not None else None

    async def set(self, key: str, value: int, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, int(value), ex=ttl_seconds or None)

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        result = await self.client.eval(self._INCREMENT_SCRIPT, 1, key, int(ttl_seconds or 0))
        return int(result)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def close(self) -> None:
        await self.client.aclose()
