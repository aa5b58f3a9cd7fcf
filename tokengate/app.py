from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from starlette.middleware.sessions import SessionMiddleware

from tokengate import __version__
from tokengate.api.error_handling import register_exception_handlers
from tokengate.api.middleware import AuthMiddleware
from tokengate.api.schemas import Envelope, UserInfo
from tokengate.config import Settings, get_settings
from tokengate.logging import get_logger, set_correlation_id
from tokengate.service.provider import OAuth2Provider

logger = get_logger(__name__)

HEALTH_PATH = "/healthz"
USERINFO_PATH = "/oauth2/userinfo"


def create_app(
    settings: Optional[Settings] = None,
    provider: Optional[OAuth2Provider] = None,
) -> FastAPI:
    """Wire the cookie session layer, the OAuth2 gate and a userinfo endpoint."""
    settings = settings or get_settings()
    provider = provider or OAuth2Provider.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "oauth2_provider_ready",
            client_id=provider.config.client_id,
            introspection=provider.config.introspect_url is not None,
            bearer_cache=type(provider.bearer_cache).__name__,
        )
        yield
        try:
            await provider.aclose()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="tokengate", version=__version__, lifespan=lifespan)
    app.state.oauth2_provider = provider
    register_exception_handlers(app)

    # Added first so it runs inside the session middleware
    app.add_middleware(AuthMiddleware, provider=provider, exempt_paths=(HEALTH_PATH,))
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret or secrets.token_urlsafe(32),
        session_cookie=settings.session_cookie_name,
        max_age=settings.session_max_age_seconds,
        https_only=settings.session_https_only,
        same_site="lax",
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get(HEALTH_PATH)
    async def healthz():
        return Envelope(status="ok", data={"version": __version__}).model_dump()

    @app.get(USERINFO_PATH)
    async def userinfo(request: Request):
        oauth_session = getattr(request.state, "oauth2_session", None)
        info = UserInfo(
            authenticated=oauth_session is not None and oauth_session.is_authenticated(),
            username=getattr(request.state, "username", "Anonymous"),
            source=oauth_session.source.value if oauth_session else None,
            scope=oauth_session.data.scope if oauth_session else None,
            token_info=oauth_session.token_info if oauth_session else {},
        )
        return Envelope(status="ok", data=info.model_dump()).model_dump()

    return app


__all__ = ["create_app"]
