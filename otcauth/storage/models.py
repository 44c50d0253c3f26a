from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    phone_number: str
    registered_at: datetime
    last_login_at: datetime
    is_active: bool = True

    @classmethod
    def new(cls, phone_number: str, *, now: Optional[datetime] = None) -> "User":
        registered = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            phone_number=phone_number,
            registered_at=registered,
            last_login_at=registered,
        )


@dataclass
class OTPChallenge:
    """A one-time code bound to an opaque session handle.

    ``used_at`` is set exactly when ``is_used`` is true. Expiry is never
    stored; it is derived by comparing ``expires_at`` with the current time.
    """

    id: int
    phone_number: str
    code: str
    session_handle: str
    expires_at: datetime
    is_used: bool = False
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class RateLimitWindow:
    phone_number: str
    request_count: int
    window_start_at: datetime
    last_request_at: datetime


@dataclass
class RateLimitDecision:
    allowed: bool
    window: RateLimitWindow
    retry_after: int = 0


@dataclass
class SessionRecord:
    token_fingerprint: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    last_used_at: datetime

    def to_cache(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "token_fingerprint": self.token_fingerprint,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
        }

    @classmethod
    def from_cache(cls, payload: Dict[str, Any]) -> "SessionRecord":
        return cls(
            token_fingerprint=payload["token_fingerprint"],
            user_id=payload["user_id"],
            issued_at=datetime.fromisoformat(payload["issued_at"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            last_used_at=datetime.fromisoformat(payload["last_used_at"]),
        )


@dataclass
class SessionClaims:
    user_id: str
    phone_number: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    token_id: str
    issuer: str
    token_fingerprint: str


@dataclass
class IssuedChallenge:
    session_handle: str
    expires_at: datetime


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime
    token_fingerprint: str


@dataclass
class LoginResult:
    bearer_token: str
    user: User
    expires_at: datetime


@dataclass
class LogoutResult:
    tokens_revoked: int


@dataclass
class UserPage:
    users: List[User]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size
