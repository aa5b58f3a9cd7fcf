from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from tokengate.config import OAuth2ProviderConfig
from tokengate.logging import get_logger
from tokengate.service.errors import OAuth2ProviderError
from tokengate.storage.models import SessionData

logger = get_logger(__name__)

# Token response fields kept in the session; everything else is dropped.
_TOKEN_FIELDS = ("access_token", "id_token", "refresh_token", "scope")


class OAuth2Client:
    """Stateless request/response calls against the identity provider.

    Every failure (transport error, timeout, non-2xx status, unparsable body)
    is raised as ``OAuth2ProviderError``; deciding what a failure means for a
    session is the caller's job.
    """

    def __init__(
        self,
        config: OAuth2ProviderConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.request_timeout_seconds,
            follow_redirects=False,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http_client.aclose()

    def authorize_url(self, state: str, redirect_uri: str) -> str:
        """Provider URL the browser is sent to for an authorization code."""
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        if self.config.scope_string:
            params["scope"] = self.config.scope_string
        base = self.config.authorize_url or self.config.token_url
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode(params)}"

    def _client_credentials(self) -> dict[str, str]:
        creds = {"client_id": self.config.client_id}
        if self.config.client_secret:
            creds["client_secret"] = self.config.client_secret
        return creds

    async def _post_form(self, url: str, data: dict[str, str], operation: str) -> Any:
        try:
            response = await self._http_client.post(
                url,
                data=data,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "oauth2_provider_http_error",
                operation=operation,
                status_code=exc.response.status_code,
            )
            raise OAuth2ProviderError(
                f"{operation} rejected by identity provider",
                provider_status=exc.response.status_code,
                detail={"operation": operation},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "oauth2_provider_transport_error",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise OAuth2ProviderError(
                f"{operation} request to identity provider failed",
                detail={"operation": operation},
            ) from exc

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            logger.warning("oauth2_provider_parse_error", operation=operation, error=str(exc))
            raise OAuth2ProviderError(
                f"{operation} response is not valid JSON",
                provider_status=response.status_code,
                detail={"operation": operation},
            ) from exc

    def _to_session_data(self, payload: Any, operation: str) -> SessionData:
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise OAuth2ProviderError(
                f"{operation} response missing access_token",
                detail={"operation": operation},
            )
        fields = {name: payload.get(name) for name in _TOKEN_FIELDS}
        return SessionData(**{k: v for k, v in fields.items() if v is not None})

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> SessionData:
        """authorization_code grant."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            **self._client_credentials(),
        }
        redirect_uri = redirect_uri or self.config.redirect_uri
        if redirect_uri:
            data["redirect_uri"] = redirect_uri
        if self.config.scope_string:
            data["scope"] = self.config.scope_string
        payload = await self._post_form(self.config.token_url, data, "exchange_code")
        return self._to_session_data(payload, "exchange_code")

    async def refresh(self, refresh_token: str) -> SessionData:
        """refresh_token grant.

        The result has no ``refresh_token`` when the provider did not rotate it,
        meaning the existing one stays valid.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            **self._client_credentials(),
        }
        if self.config.scope_string:
            data["scope"] = self.config.scope_string
        payload = await self._post_form(self.config.token_url, data, "refresh")
        return self._to_session_data(payload, "refresh")

    async def introspect(self, access_token: str) -> dict[str, Any]:
        """RFC 7662 token introspection.

        Without an introspection endpoint every token reports as active.
        """
        if self.config.introspect_url is None:
            return {"active": True}
        data = {
            "token": access_token,
            "token_type_hint": "access_token",
            **self._client_credentials(),
        }
        payload = await self._post_form(self.config.introspect_url, data, "introspect")
        if not isinstance(payload, dict):
            raise OAuth2ProviderError(
                "introspect response is not an object", detail={"operation": "introspect"}
            )
        if not isinstance(payload.get("active"), bool):
            payload = {**payload, "active": False}
        return payload

    async def revoke(self, token: str, token_type_hint: str = "refresh_token") -> bool:
        """RFC 7009 token revocation; False when no revocation endpoint is configured."""
        if not self.config.revoke_url:
            return False
        data = {
            "token": token,
            "token_type_hint": token_type_hint,
            **self._client_credentials(),
        }
        await self._post_form(self.config.revoke_url, data, "revoke")
        return True


__all__ = ["OAuth2Client"]
