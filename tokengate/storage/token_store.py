from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Any, MutableMapping, Optional, Protocol, Tuple

from tokengate.logging import get_logger
from tokengate.storage.models import SessionData, milliseconds_since_epoch

logger = get_logger(__name__)

# Matches the default bearer cache capacity in OAuth2ProviderConfig
_DEFAULT_CACHE_CAPACITY = 10000


class TokenStore(Protocol):
    """Persistence capability for ``SessionData`` between requests."""

    async def get(self, key: str) -> Optional[SessionData]: ...

    async def set(self, key: str, data: SessionData) -> bool: ...

    async def clear(self, key: str) -> bool: ...


class CookieTokenStore:
    """Stores session data under a key of the request's decoded cookie session.

    Signing, encoding and expiry of the cookie belong to the session
    middleware in front of us; this only reads and writes one key.
    """

    def __init__(self, session: Optional[MutableMapping[str, Any]]) -> None:
        self.session = session

    @property
    def available(self) -> bool:
        return self.session is not None

    async def get(self, key: str) -> Optional[SessionData]:
        if self.session is None:
            return None
        value = self.session.get(key)
        if value is None:
            return None
        try:
            return SessionData.from_stored(value)
        except ValueError as exc:
            # Covers malformed JSON and pydantic validation failures
            logger.warning("cookie_session_data_invalid", key=key, error=str(exc))
            return None

    async def set(self, key: str, data: SessionData) -> bool:
        if self.session is None:
            return False
        self.session[key] = data.to_stored()
        return True

    async def clear(self, key: str) -> bool:
        if self.session is None:
            return False
        self.session.pop(key, None)
        return True


class BearerTokenCache:
    """In-memory LRU + TTL mapping from raw bearer token to session data.

    Expired entries are dropped lazily when touched, and all expired entries
    are pruned before an insert. When the cache is still full after pruning
    the least recently used entry is evicted. Thread-safe: a single lock guards
    the map since sync endpoints may run in a worker thread pool.
    """

    def __init__(
        self,
        capacity: int = _DEFAULT_CACHE_CAPACITY,
        ttl_ms: int = 5 * 60 * 1000,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_ms = ttl_ms
        self._entries: OrderedDict[str, Tuple[int, dict[str, Any]]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _now(self) -> int:
        return milliseconds_since_epoch()

    def _prune_expired(self, now: int) -> int:
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    async def get(self, key: str) -> Optional[SessionData]:
        now = self._now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, stored = entry
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
            self._entries.move_to_end(key)
        return SessionData.from_stored(stored)

    async def set(self, key: str, data: SessionData) -> bool:
        now = self._now()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.capacity:
                pruned = self._prune_expired(now)
                while len(self._entries) >= self.capacity:
                    self._entries.popitem(last=False)
                    pruned += 1
                logger.debug("bearer_cache_evicted", count=pruned, size=len(self._entries))
            self._entries[key] = (now + self.ttl_ms, data.to_stored())
            self._entries.move_to_end(key)
        return True

    async def clear(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None


__all__ = ["TokenStore", "CookieTokenStore", "BearerTokenCache"]
