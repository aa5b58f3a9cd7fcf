from __future__ import annotations

from typing import Any, Mapping, MutableMapping, Optional, Union

from tokengate.service.errors import OAuth2ProviderError, UnknownSessionSourceError
from tokengate.service.provider import OAuth2Provider
from tokengate.storage.models import (
    SessionData,
    SessionSource,
    milliseconds_since_epoch,
    value_from_path,
)
from tokengate.storage.token_store import CookieTokenStore, TokenStore

ANONYMOUS_USERNAME = "Anonymous"


def parse_bearer_token(request: Any) -> Optional[str]:
    """Return the token of an ``Authorization: Bearer <token>`` header, if any."""
    headers = getattr(request, "headers", None) or {}
    header = headers.get("authorization") or headers.get("Authorization")
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def request_session(request: Any) -> Optional[MutableMapping[str, Any]]:
    """The decoded cookie session of a request, or None when there is none.

    Starlette's ``request.session`` asserts when no session middleware is
    installed, so the ASGI scope is consulted directly.
    """
    scope = getattr(request, "scope", None)
    if isinstance(scope, Mapping):
        return scope.get("session")
    return getattr(request, "session", None)


class SessionState:
    """One request's view of an OAuth2 session.

    Created by ``load()`` at request start, mutated by ``update()`` and
    persisted by ``save()``. Never shared between requests: only the token
    stores outlive a request. The persistence path (cookie session or bearer
    cache) is fixed at load time by ``source``.
    """

    def __init__(
        self,
        provider: OAuth2Provider,
        request: Any,
        source: SessionSource,
        store: TokenStore,
        key: str,
        data: Optional[SessionData] = None,
    ) -> None:
        self.provider = provider
        self.request = request
        self.source = source
        self.store = store
        self._key = key
        self._data = data or SessionData()
        self._username: Optional[str] = None

    # ---- loading -------------------------------------------------------

    @classmethod
    async def load(
        cls,
        provider: OAuth2Provider,
        request: Any,
        bearer_token: Optional[str] = None,
    ) -> "SessionState":
        """Build the session for a request from its bearer header or cookie session."""
        bearer_token = bearer_token or parse_bearer_token(request)
        if bearer_token is not None:
            return await cls._load_from_bearer_token(provider, request, bearer_token)
        return await cls.load_from_session(provider, request)

    @classmethod
    async def load_from_session(cls, provider: OAuth2Provider, request: Any) -> "SessionState":
        store = CookieTokenStore(request_session(request))
        key = provider.config.session_key
        data = await store.get(key)
        return cls(provider, request, SessionSource.SESSION_STATE, store, key, data)

    @classmethod
    async def _load_from_bearer_token(
        cls, provider: OAuth2Provider, request: Any, token: str
    ) -> "SessionState":
        data = await provider.bearer_cache.get(token) or SessionData()
        if data.access_token != token:
            data.access_token = token
        # Bearer sessions never carry identity tokens
        data.id_token = None
        return cls(provider, request, SessionSource.BEARER, provider.bearer_cache, token, data)

    # ---- data accessors ------------------------------------------------

    @property
    def config(self):
        return self.provider.config

    @property
    def logger(self):
        return self.provider.logger

    @property
    def data(self) -> SessionData:
        return self._data

    @property
    def access_token(self) -> Optional[str]:
        return self._data.access_token

    @property
    def id_token(self) -> Optional[str]:
        return self._data.id_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._data.refresh_token

    @property
    def updated(self) -> int:
        return self._data.updated or 0

    @property
    def refreshed(self) -> int:
        return self._data.refreshed or 0

    @property
    def introspected(self) -> int:
        return self._data.introspected or 0

    @property
    def renewed(self) -> int:
        return self._data.renewed or 0

    @property
    def invalidated(self) -> Optional[int]:
        return self._data.invalidated

    @property
    def token_info(self) -> dict[str, Any]:
        return self._data.token_info or {}

    @property
    def active(self) -> bool:
        """False once introspection has reported the token inactive."""
        if self._data.token_info is None:
            return True
        return self._data.token_info.get("active") is True

    @property
    def session_id(self) -> str:
        """Last five characters of the session's token, for log correlation."""
        token = self.access_token or self.id_token
        if token is None or len(token) < 5:
            return "?????"
        return token[-5:]

    @property
    def username(self) -> str:
        if self._username is None:
            self._username = self._resolve_username()
        return self._username

    def _resolve_username(self) -> str:
        if self._data.token_info is None:
            return ANONYMOUS_USERNAME
        for path in self.config.username_from_token_info_path:
            value = value_from_path(self._data.token_info, path)
            if value is not None:
                return str(value)
        return ANONYMOUS_USERNAME

    def _now(self) -> int:
        return milliseconds_since_epoch()

    # ---- derived state -------------------------------------------------

    def is_valid_session(self) -> bool:
        if self.access_token is None:
            return False
        if self.source is SessionSource.BEARER:
            return True
        return self._data.invalidated is None

    def is_valid_token_info(self) -> bool:
        if self.config.introspect_url is None:
            return True
        return self._data.token_info is not None

    def is_refresh_elapsed(self) -> bool:
        # Bearer sessions hold no refresh token of their own
        if self.source is SessionSource.BEARER:
            return False
        if self.refresh_token is None:
            return False
        # A refresh that kept the old refresh token still restarts the clock
        last_refresh = max(self.refreshed, self.renewed)
        return self._now() - last_refresh >= self.config.refresh_interval_ms

    def is_recheck_elapsed(self) -> bool:
        return self._now() - self.updated >= self.config.recheck_interval_ms

    def needs_update(self) -> bool:
        if not self.is_valid_session():
            return False
        return (
            not self.active
            or not self.is_valid_token_info()
            or self.is_recheck_elapsed()
            or self.is_refresh_elapsed()
        )

    def is_authenticated(self) -> bool:
        return (
            self.is_valid_session()
            and self._data.invalidated is None
            and not self.needs_update()
        )

    # ---- mutation ------------------------------------------------------

    def invalidate(self) -> None:
        """Mark the current tokens as known-bad."""
        self._data.invalidated = self._now()

    async def update_session_data(
        self, data: Union[SessionData, Mapping[str, Any]], save: bool = True
    ) -> None:
        """Merge non-null fields into the session and stamp the timestamps.

        ``refreshed`` moves only when a new refresh token arrives; a new access
        token clears any invalidation.
        """
        values = data.to_stored() if isinstance(data, SessionData) else dict(data)
        values = {
            name: value
            for name, value in values.items()
            if value is not None and name in SessionData.model_fields
        }
        for name, value in values.items():
            setattr(self._data, name, value)

        now = self._now()
        self._data.updated = now
        if values.get("refresh_token") is not None:
            self._data.refreshed = now
        if "token_info" in values:
            self._username = None

        if save:
            await self.save()

    async def update_token_info(self, save: bool = True, raise_errors: bool = True) -> bool:
        """Re-introspect the access token.

        Returns True on success, or when the provider has no introspection
        endpoint.
        """
        if self.config.introspect_url is None:
            return True
        if self.access_token is None:
            return False
        try:
            token_info = await self.provider.client.introspect(self.access_token)
        except OAuth2ProviderError:
            if raise_errors:
                raise
            return False
        self._data.introspected = self._now()
        await self.update_session_data({"token_info": token_info}, save)
        return True

    async def refresh(self, save: bool = True, raise_errors: bool = True) -> bool:
        """Exchange the refresh token for a new token set.

        Token info describing the previous access token is dropped when a new
        one arrives.
        """
        if self.refresh_token is None:
            return False
        try:
            session_data = await self.provider.client.refresh(self.refresh_token)
        except OAuth2ProviderError:
            if raise_errors:
                raise
            return False
        if session_data.access_token != self.access_token:
            self._data.token_info = None
            self._username = None
        self._data.renewed = self._now()
        await self.update_session_data(session_data, save)
        return True

    async def authenticate(self, code: str, redirect_uri: Optional[str] = None) -> bool:
        """Complete an authorization-code login, replacing any previous tokens.

        Provider errors from the code exchange propagate: there is no prior
        session to fall back on.
        """
        session_data = await self.provider.client.exchange_code(code, redirect_uri)
        self._data = SessionData()
        self._username = None
        await self.update_session_data(session_data, save=False)
        if not await self.update_token_info(save=False, raise_errors=False):
            self.logger.warning(
                "oauth2_login_token_info_failed",
                session_id=self.session_id,
            )
        return await self.save()

    async def update(self, force: bool = False) -> bool:
        """Introspect and/or refresh the session when due.

        Returns True when an update was attempted. Provider failures never
        escape: a failed introspection escalates to a refresh, and a failed
        refresh invalidates the session.
        """
        if not self.is_valid_session():
            return False
        if not force and not self.needs_update():
            return False

        via = "introspect"
        if self.source is SessionSource.BEARER:
            await self.update_token_info(save=False, raise_errors=False)
            if not self.active:
                self.invalidate()
        elif self.source is SessionSource.SESSION_STATE:
            needs_refresh = self.is_refresh_elapsed() or not self.active
            if not needs_refresh:
                if not await self.update_token_info(save=False, raise_errors=False):
                    needs_refresh = True
                else:
                    needs_refresh = not self.active

            if needs_refresh:
                stale_token_info = self._data.token_info
                if not await self.refresh(save=False, raise_errors=False):
                    # The access token is presumed dead once refresh fails
                    self.invalidate()
                else:
                    via = "refresh"
                    if not await self.update_token_info(save=False, raise_errors=False):
                        # Same subject as before; the new token stays usable until the next recheck
                        self._data.token_info = {**(stale_token_info or {}), "active": True}
                        self._username = None
                        self.logger.warning(
                            "oauth2_refresh_token_info_failed",
                            session_id=self.session_id,
                            message="Refresh succeeded but token_info could not be retrieved",
                        )
        else:
            raise UnknownSessionSourceError(f"Unknown session source {self.source!r}")

        self._data.updated = self._now()
        await self.save()

        self.logger.debug(
            "oauth2_session_update",
            decision="GRANTED" if self.is_authenticated() else "DENIED",
            username=self.username,
            session_id=self.session_id,
            source=self.source.value,
            via=via,
        )
        return True

    async def save(self) -> bool:
        """Persist the session data through the path chosen at load time."""
        if self.source is SessionSource.BEARER:
            if self.access_token is None:
                return False
            return await self.store.set(self.access_token, self._data)
        if self.source is SessionSource.SESSION_STATE:
            if isinstance(self.store, CookieTokenStore) and not self.store.available:
                self.logger.warning(
                    "oauth2_session_save_skipped",
                    message="Could not save oauth2 session state; request has no session object",
                )
                return False
            return await self.store.set(self._key, self._data)
        raise UnknownSessionSourceError(f"Unknown session source {self.source!r}, invalid session")

    async def clear(self) -> bool:
        """Log out: wipe the session data and persist the empty state."""
        self._data = SessionData()
        self._username = None
        if self.source is SessionSource.BEARER:
            await self.store.clear(self._key)
            return True
        return await self.save()


__all__ = ["SessionState", "parse_bearer_token", "request_session", "ANONYMOUS_USERNAME"]
