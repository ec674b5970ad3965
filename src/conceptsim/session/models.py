"""Session state types."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    VALID = "valid"
    INVALID = "invalid"


class AuthEvent(str, Enum):
    """Change notifications published by a credential store."""

    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    TOKEN_REFRESHED = "token_refreshed"
    USER_UPDATED = "user_updated"


@dataclass
class Session:
    """Live credential state. Mutated in place by the session guard only."""

    identity: str | None = None
    access_token: str | None = None
    expires_at: float | None = None
    refresh_token: str | None = None
    email: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.identity is None or self.access_token is None

    def seconds_until_expiry(self, now: float) -> float | None:
        if self.expires_at is None:
            return None
        return self.expires_at - now

    def update_from(self, other: "Session") -> None:
        self.identity = other.identity
        self.access_token = other.access_token
        self.expires_at = other.expires_at
        self.refresh_token = other.refresh_token
        self.email = other.email

    def clear(self) -> None:
        self.identity = None
        self.access_token = None
        self.expires_at = None
        self.refresh_token = None
        self.email = None

    def copy(self) -> "Session":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        # Tokens are never exported.
        return {
            "identity": self.identity,
            "email": self.email,
            "expires_at": self.expires_at,
            "has_access_token": self.access_token is not None,
            "has_refresh_token": self.refresh_token is not None,
        }
