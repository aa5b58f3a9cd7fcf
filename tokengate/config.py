from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokengate.logging import get_logger

logger = get_logger(__name__)


def _split_list(value: Any) -> Any:
    """Accept comma or whitespace separated strings for list fields."""
    if isinstance(value, str):
        return [part for part in value.replace(",", " ").split() if part]
    return value


class OAuth2ProviderConfig(BaseModel):
    """Immutable identity provider configuration shared by every session component.

    Intervals and timestamps are milliseconds. ``introspect_url`` is optional;
    without it every token is treated as perpetually active.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    client_id: str
    client_secret: str | None = None
    token_url: str
    authorize_url: str | None = None
    introspect_url: str | None = None
    revoke_url: str | None = None
    redirect_uri: str | None = None
    scope: tuple[str, ...] = ()

    session_key: str = "oauth2_session"
    recheck_interval_ms: int = Field(60 * 1000, ge=0)
    refresh_interval_ms: int = Field(5 * 60 * 1000, ge=0)
    username_from_token_info_path: tuple[str, ...] = ("username", "email", "sub")

    bearer_cache_capacity: int = Field(10000, ge=1)
    bearer_cache_ttl_ms: int = Field(5 * 60 * 1000, ge=1)
    request_timeout_seconds: float = Field(10.0, gt=0)

    login_path: str = "/oauth2/login"
    callback_path: str = "/oauth2/code"
    logout_path: str = "/oauth2/logout"
    state_ttl_ms: int = Field(10 * 60 * 1000, ge=1)
    allow_anonymous_paths: tuple[str, ...] = ()

    @field_validator(
        "scope", "username_from_token_info_path", "allow_anonymous_paths", mode="before"
    )
    @classmethod
    def _parse_lists(cls, value: Any) -> Any:
        value = _split_list(value)
        if value is None:
            return ()
        return tuple(value)

    @property
    def scope_string(self) -> str | None:
        return " ".join(self.scope) if self.scope else None


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment (with a ``.env`` fallback)."""

    oauth2_client_id: str | None = env_field(None, "OAUTH2_CLIENT_ID")
    oauth2_client_secret: str | None = env_field(None, "OAUTH2_CLIENT_SECRET")
    oauth2_token_url: str | None = env_field(None, "OAUTH2_TOKEN_URL")
    oauth2_authorize_url: str | None = env_field(None, "OAUTH2_AUTHORIZE_URL")
    oauth2_introspect_url: str | None = env_field(None, "OAUTH2_INTROSPECT_URL")
    oauth2_revoke_url: str | None = env_field(None, "OAUTH2_REVOKE_URL")
    oauth2_redirect_uri: str | None = env_field(None, "OAUTH2_REDIRECT_URI")
    oauth2_scope: list[str] = env_field([], "OAUTH2_SCOPE")
    oauth2_session_key: str = env_field("oauth2_session", "OAUTH2_SESSION_KEY")
    oauth2_recheck_interval_ms: int = env_field(
        60 * 1000,
        "OAUTH2_RECHECK_INTERVAL_MS",
        description="Max age of token_info before it is re-introspected",
    )
    oauth2_refresh_interval_ms: int = env_field(
        5 * 60 * 1000,
        "OAUTH2_REFRESH_INTERVAL_MS",
        description="Max age of the refresh token before a proactive refresh",
    )
    oauth2_username_paths: list[str] = env_field(
        ["username", "email", "sub"], "OAUTH2_USERNAME_PATHS"
    )
    oauth2_allow_anonymous_paths: list[str] = env_field([], "OAUTH2_ALLOW_ANONYMOUS_PATHS")
    oauth2_request_timeout_seconds: float = env_field(10.0, "OAUTH2_REQUEST_TIMEOUT_SECONDS")
    bearer_cache_capacity: int = env_field(10000, "BEARER_CACHE_CAPACITY")
    bearer_cache_ttl_ms: int = env_field(5 * 60 * 1000, "BEARER_CACHE_TTL_MS")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Share the bearer token cache between workers through Redis",
    )

    session_secret: str | None = env_field(None, "SESSION_SECRET")
    session_cookie_name: str = env_field("tokengate_session", "SESSION_COOKIE_NAME")
    session_https_only: bool = env_field(False, "SESSION_HTTPS_ONLY")
    session_max_age_seconds: int = env_field(14 * 24 * 3600, "SESSION_MAX_AGE_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "oauth2_scope", "oauth2_username_paths", "oauth2_allow_anonymous_paths", mode="before"
    )
    @classmethod
    def _parse_lists(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("session_secret")
    @classmethod
    def _warn_insecure_session(cls, value: str | None) -> str | None:
        if not value:
            logger.warning(
                "session_secret_missing",
                message="Session cookies will be signed with a random per-process key",
            )
        return value

    def provider_config(self) -> OAuth2ProviderConfig:
        """Build the immutable provider configuration from these settings."""
        if not self.oauth2_client_id or not self.oauth2_token_url:
            raise ValueError("OAUTH2_CLIENT_ID and OAUTH2_TOKEN_URL are required")
        return OAuth2ProviderConfig(
            client_id=self.oauth2_client_id,
            client_secret=self.oauth2_client_secret,
            token_url=self.oauth2_token_url,
            authorize_url=self.oauth2_authorize_url or self.oauth2_token_url,
            introspect_url=self.oauth2_introspect_url,
            revoke_url=self.oauth2_revoke_url,
            redirect_uri=self.oauth2_redirect_uri,
            scope=self.oauth2_scope,
            session_key=self.oauth2_session_key,
            recheck_interval_ms=self.oauth2_recheck_interval_ms,
            refresh_interval_ms=self.oauth2_refresh_interval_ms,
            username_from_token_info_path=self.oauth2_username_paths,
            allow_anonymous_paths=self.oauth2_allow_anonymous_paths,
            bearer_cache_capacity=self.bearer_cache_capacity,
            bearer_cache_ttl_ms=self.bearer_cache_ttl_ms,
            request_timeout_seconds=self.oauth2_request_timeout_seconds,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
