from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tokengate.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset(
    {"validation_error", "unauthorized", "forbidden", "not_found", "server_error", "provider_error"}
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class UserInfo(BaseModel):
    """Identity of the caller as seen by the auth middleware."""

    authenticated: bool
    username: str
    source: Optional[str] = None
    scope: Optional[str] = None
    token_info: dict[str, Any] = Field(default_factory=dict)
