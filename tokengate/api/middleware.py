from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from tokengate.api.error_handling import error_response
from tokengate.api.schemas import Envelope
from tokengate.service.errors import (
    AuthenticationError,
    ConfigurationError,
    OAuth2ProviderError,
    OAuth2StateError,
    ServiceError,
)
from tokengate.service.provider import OAuth2Provider
from tokengate.service.session import (
    ANONYMOUS_USERNAME,
    SessionState,
    parse_bearer_token,
    request_session,
)
from tokengate.storage.models import SessionSource, milliseconds_since_epoch

# Session key holding the pending authorization request
_STATE_SESSION_KEY = "oauth2_state"


@dataclass
class AuthDecision:
    """Outcome of the per-request authentication policy."""

    allowed: bool
    session: SessionState
    username: str
    bearer: bool


def _safe_redirect(target: Optional[str], default: str = "/") -> str:
    """Only allow same-origin absolute paths as post-login targets."""
    if not target or not target.startswith("/") or target.startswith("//"):
        return default
    return target


def _wants_json(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "application/json" in accept and "text/html" not in accept


class AuthMiddleware(BaseHTTPMiddleware):
    """Gates every request on a valid OAuth2 session.

    Runs inside a cookie session middleware: it reads and writes the decoded
    session mapping but never encodes cookies itself. Bearer requests use the
    provider's bearer cache instead.
    """

    def __init__(
        self,
        app: ASGIApp,
        provider: OAuth2Provider,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        super().__init__(app)
        self.provider = provider
        self.exempt_paths = tuple(exempt_paths)

    @property
    def config(self):
        return self.provider.config

    async def authorize(self, request: Request) -> AuthDecision:
        """Load and lazily update the request's session, then decide."""
        bearer_token = parse_bearer_token(request)
        session = await SessionState.load(self.provider, request, bearer_token)
        await session.update()
        allowed = session.is_authenticated()
        return AuthDecision(
            allowed=allowed,
            session=session,
            username=session.username if allowed else ANONYMOUS_USERNAME,
            bearer=bearer_token is not None,
        )

    def _is_anonymous_path(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.config.allow_anonymous_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in self.exempt_paths:
            return await call_next(request)

        try:
            if path == self.config.login_path:
                return await self.login(request)
            if path == self.config.callback_path:
                return await self.callback(request)
            if path == self.config.logout_path:
                return await self.logout(request)
        except ServiceError as exc:
            # Exception handlers sit inside this middleware, so render here
            log_fn = self.provider.logger.error if exc.status_code >= 500 else self.provider.logger.warning
            log_fn(
                "oauth2_flow_error",
                path=path,
                status_code=exc.status_code,
                error_code=exc.error_code,
                message=exc.message,
            )
            return error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

        decision = await self.authorize(request)
        request.state.oauth2_session = decision.session
        request.state.username = decision.username
        if decision.allowed or self._is_anonymous_path(path):
            return await call_next(request)
        return self.deny(request, decision)

    def deny(self, request: Request, decision: AuthDecision) -> Response:
        if decision.bearer or _wants_json(request):
            challenge = 'Bearer error="invalid_token"' if decision.bearer else "Bearer"
            return error_response(
                AuthenticationError.status_code,
                "authentication required",
                code=AuthenticationError.error_code,
                headers={"WWW-Authenticate": challenge},
            )
        origin = request.url.path
        if request.url.query:
            origin = f"{origin}?{request.url.query}"
        query = urlencode({"redirect": origin})
        return RedirectResponse(f"{self.config.login_path}?{query}", status_code=302)

    def _redirect_uri(self, request: Request) -> str:
        if self.config.redirect_uri:
            return self.config.redirect_uri
        return str(request.base_url).rstrip("/") + self.config.callback_path

    def _require_session(self, request: Request) -> dict:
        session = request_session(request)
        if session is None:
            raise ConfigurationError(
                "OAuth2 login requires a session middleware",
                detail={"path": request.url.path},
            )
        return session

    async def login(self, request: Request) -> Response:
        """Start the authorization-code flow."""
        session = self._require_session(request)
        state = secrets.token_urlsafe(24)
        session[_STATE_SESSION_KEY] = {
            "value": state,
            "expires": milliseconds_since_epoch() + self.config.state_ttl_ms,
            "redirect": _safe_redirect(request.query_params.get("redirect")),
        }
        url = self.provider.client.authorize_url(state, self._redirect_uri(request))
        self.provider.logger.info("oauth2_login_redirect", path=request.url.path)
        return RedirectResponse(url, status_code=302)

    async def callback(self, request: Request) -> Response:
        """Complete the authorization-code flow and persist the new session."""
        session = self._require_session(request)
        pending = session.pop(_STATE_SESSION_KEY, None) or {}

        error = request.query_params.get("error")
        if error:
            raise AuthenticationError(
                "authorization was not granted",
                detail={
                    "error": error,
                    "error_description": request.query_params.get("error_description"),
                },
            )

        state = request.query_params.get("state")
        if not pending.get("value") or state != pending.get("value"):
            raise OAuth2StateError("authorization state mismatch")
        if pending.get("expires", 0) <= milliseconds_since_epoch():
            raise OAuth2StateError("authorization state expired")
        code = request.query_params.get("code")
        if not code:
            raise OAuth2StateError("authorization code missing")

        oauth_session = await SessionState.load_from_session(self.provider, request)
        try:
            await oauth_session.authenticate(code, self._redirect_uri(request))
        except OAuth2ProviderError as exc:
            raise AuthenticationError(
                "authorization code exchange failed",
                detail={"provider_status": exc.provider_status},
            ) from exc

        self.provider.logger.info(
            "oauth2_login_complete",
            username=oauth_session.username,
            session_id=oauth_session.session_id,
        )
        return RedirectResponse(_safe_redirect(pending.get("redirect")), status_code=302)

    async def logout(self, request: Request) -> Response:
        """Clear the session, revoking its tokens when the provider supports it."""
        oauth_session = await SessionState.load(self.provider, request)
        await self._revoke(oauth_session)
        await oauth_session.clear()
        self.provider.logger.info("oauth2_logout", source=oauth_session.source.value)
        if oauth_session.source is SessionSource.BEARER or _wants_json(request):
            return JSONResponse(Envelope(status="ok", data={"logged_out": True}).model_dump())
        return RedirectResponse(
            _safe_redirect(request.query_params.get("redirect")), status_code=302
        )

    async def _revoke(self, oauth_session: SessionState) -> None:
        if not self.config.revoke_url:
            return
        candidates: list[tuple[str, Any]] = [
            ("refresh_token", oauth_session.refresh_token),
            ("access_token", oauth_session.access_token),
        ]
        for hint, token in candidates:
            if not token:
                continue
            try:
                await self.provider.client.revoke(token, hint)
            except OAuth2ProviderError as exc:
                self.provider.logger.warning(
                    "oauth2_revoke_failed",
                    hint=hint,
                    provider_status=exc.provider_status,
                )


__all__ = ["AuthDecision", "AuthMiddleware", "parse_bearer_token"]
