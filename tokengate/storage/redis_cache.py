from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tokengate.logging import get_logger
from tokengate.storage.models import SessionData

logger = get_logger(__name__)


class RedisBearerTokenCache:
    """Bearer token session cache shared between workers through Redis.

    Entries expire with a per-key TTL. Keys are a digest of the bearer token so
    raw credentials never appear in the keyspace. Redis failures fail open: a
    missing entry only means the bearer session starts fresh.
    """

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds
    KEY_PREFIX = "oauth2:bearer:"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        ttl_ms: int = 5 * 60 * 1000,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.ttl_ms = ttl_ms
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @property
    def _ttl_seconds(self) -> int:
        # Redis rejects zero TTLs
        return max(1, self.ttl_ms // 1000)

    def _key(self, token: str) -> str:
        digest = hashlib.sha256(token.encode()).hexdigest()
        return f"{self.KEY_PREFIX}{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the shared cache."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[SessionData]:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as exc:
            logger.warning("bearer_cache_get_failed", error=str(exc))
            return None
        if not raw:
            return None
        try:
            return SessionData.from_stored(json.loads(raw))
        except ValueError as exc:
            logger.warning("bearer_cache_entry_invalid", error=str(exc))
            await self.clear(key)
            return None

    async def set(self, key: str, data: SessionData) -> bool:
        payload = json.dumps(data.to_stored())
        try:
            await self.client.set(self._key(key), payload, ex=self._ttl_seconds)
        except RedisError as exc:
            logger.warning("bearer_cache_set_failed", error=str(exc))
            return False
        return True

    async def clear(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(self._key(key)))
        except RedisError as exc:
            logger.warning("bearer_cache_clear_failed", error=str(exc))
            return False

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisBearerTokenCache"]
