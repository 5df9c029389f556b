from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError

from tollgate.logging import get_logger

logger = get_logger(__name__)


class RedisExpiringStore:
    """ExpiringStore backed by Redis.

    Values are stored as JSON strings with millisecond TTLs (``PX``), so every
    process behind a load balancer sees the same blacklist entries, pending
    logins and OAuth artifacts.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Used when the server predates GETDEL (Redis < 6.2)
    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "tollgate:",
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        await self.client.set(self._key(key), json.dumps(value), px=int(ttl_ms))

    async def add(self, key: str, value: Any, ttl_ms: int) -> bool:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        created = await self.client.set(
            self._key(key), json.dumps(value), px=int(ttl_ms), nx=True
        )
        return bool(created)

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self._key(key))
        return self._decode(key, raw)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def pop(self, key: str) -> Optional[Any]:
        """Atomically get and delete a key."""
        full_key = self._key(key)
        try:
            raw = await self.client.getdel(full_key)
        except ResponseError:
            # Older servers answer GETDEL with "unknown command"
            logger.debug("expiring_store_getdel_unsupported")
            raw = await self.client.eval(self._GETDEL_SCRIPT, 1, full_key)
        return self._decode(key, raw)

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except AttributeError:
            await self.client.close()

    def _decode(self, key: str, raw: Optional[str]) -> Optional[Any]:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entries read as absent
            logger.warning("expiring_store_decode_failed", key_prefix=key.split(":", 1)[0])
            return None
