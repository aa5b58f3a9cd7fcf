from __future__ import annotations

import json
import time
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict


def milliseconds_since_epoch() -> int:
    """Current UTC time as integer milliseconds since the UNIX epoch."""
    return int(time.time() * 1000)


def value_from_path(data: Any, path: str) -> Any:
    """Resolve a dotted path (``"a.b.0"``) against nested mappings and lists."""
    current = data
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


class SessionSource(str, Enum):
    """Where a session's data round-trips between requests."""

    SESSION_STATE = "session_state"
    BEARER = "bearer"


class SessionData(BaseModel):
    """Persisted token state for one OAuth2 session.

    Timestamps are integer milliseconds since the epoch. Assigning a non-null
    ``access_token`` always clears ``invalidated``.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_info: Optional[dict[str, Any]] = None
    updated: Optional[int] = None
    refreshed: Optional[int] = None
    introspected: Optional[int] = None
    # Last successful refresh exchange, whether or not the refresh token rotated
    renewed: Optional[int] = None
    invalidated: Optional[int] = None

    def __setattr__(self, name: str, value: Any) -> None:
        super().__setattr__(name, value)
        if name == "access_token" and value is not None:
            super().__setattr__("invalidated", None)

    @classmethod
    def from_stored(cls, value: Any) -> "SessionData":
        """Build from a stored value: a JSON string, a mapping, or nothing."""
        if value is None or value == "":
            return cls()
        if isinstance(value, SessionData):
            return value.model_copy(deep=True)
        if isinstance(value, (str, bytes)):
            value = json.loads(value)
        if not isinstance(value, Mapping):
            return cls()
        return cls.model_validate(dict(value))

    def to_stored(self) -> dict[str, Any]:
        """Plain JSON-compatible mapping, omitting unset fields."""
        return self.model_dump(mode="json", exclude_none=True)


__all__ = [
    "SessionData",
    "SessionSource",
    "milliseconds_since_epoch",
    "value_from_path",
]
