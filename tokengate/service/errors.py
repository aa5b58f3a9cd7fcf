from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered into the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - server_error (500)
    - provider_error (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class OAuth2StateError(ServiceError):
    """Authorization callback carried a missing, stale or mismatched state (400)."""
    status_code = 400
    error_code = "validation_error"


class ConfigurationError(ServiceError):
    """A collaborator required for this request is not configured (500)."""
    status_code = 500
    error_code = "server_error"


class OAuth2ProviderError(ServiceError):
    """The identity provider could not be reached or rejected the request (502).

    ``provider_status`` holds the provider's HTTP status when a response was
    received, and is None for transport failures and timeouts.
    """

    status_code = 502
    error_code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider_status: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.provider_status = provider_status


class UnknownSessionSourceError(RuntimeError):
    """A session source without a load/save branch; always a programming error."""


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "OAuth2StateError",
    "ConfigurationError",
    "OAuth2ProviderError",
    "UnknownSessionSourceError",
]
