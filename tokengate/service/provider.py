from __future__ import annotations

from typing import Any, Optional

from tokengate.config import OAuth2ProviderConfig, Settings
from tokengate.logging import get_logger
from tokengate.service.oauth2_client import OAuth2Client
from tokengate.storage.token_store import BearerTokenCache, TokenStore


class OAuth2Provider:
    """Process-wide collaborators shared by every request's SessionState."""

    def __init__(
        self,
        config: OAuth2ProviderConfig,
        *,
        client: Optional[OAuth2Client] = None,
        bearer_cache: Optional[TokenStore] = None,
        logger: Any = None,
    ) -> None:
        self.config = config
        self.client = client or OAuth2Client(config)
        self.bearer_cache: TokenStore = bearer_cache or BearerTokenCache(
            capacity=config.bearer_cache_capacity,
            ttl_ms=config.bearer_cache_ttl_ms,
        )
        self.logger = logger or get_logger("tokengate.oauth2")

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "OAuth2Provider":
        config = settings.provider_config()
        if settings.redis_url and "bearer_cache" not in kwargs:
            from tokengate.storage.redis_cache import RedisBearerTokenCache

            try:
                cache = RedisBearerTokenCache(
                    settings.redis_url, ttl_ms=config.bearer_cache_ttl_ms
                )
                cache.verify_connection()
                kwargs["bearer_cache"] = cache
            except Exception as exc:
                # Each worker keeps its own bearer cache instead
                get_logger(__name__).warning(
                    "bearer_cache_redis_unavailable",
                    error=str(exc),
                    fallback="memory",
                )
        return cls(config, **kwargs)

    async def aclose(self) -> None:
        await self.client.aclose()
        close = getattr(self.bearer_cache, "close", None)
        if close is not None:
            await close()


__all__ = ["OAuth2Provider"]
