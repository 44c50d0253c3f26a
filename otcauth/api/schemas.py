from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from otcauth.logging import get_correlation_id
from otcauth.storage.models import SessionRecord, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_challenge",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

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


class SendCodeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phone_number: str = Field(..., max_length=32)


class SendCodeResponse(BaseModel):
    message: str
    session_handle: str
    phone_number: str
    expires_at: datetime


class VerifyCodeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_handle: str = Field(..., max_length=256)
    code: str = Field(..., max_length=16)


class UserResponse(BaseModel):
    id: str
    phone_number: str
    registered_at: datetime
    last_login_at: datetime
    is_active: bool

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            phone_number=user.phone_number,
            registered_at=user.registered_at,
            last_login_at=user.last_login_at,
            is_active=user.is_active,
        )


class VerifyCodeResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserResponse
    message: str


class LogoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    logout_all: bool = False


class LogoutResponse(BaseModel):
    message: str
    tokens_revoked: int


class SessionResponse(BaseModel):
    session_id: str = Field(..., description="Shortened token fingerprint")
    issued_at: datetime
    expires_at: datetime
    last_used_at: datetime
    current: bool = False

    @classmethod
    def from_record(cls, record: SessionRecord, *, current_fingerprint: str) -> "SessionResponse":
        return cls(
            session_id=record.token_fingerprint[:16],
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            last_used_at=record.last_used_at,
            current=record.token_fingerprint == current_fingerprint,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]


class UserListResponse(BaseModel):
    users: List[UserResponse]
    total: int
    page: int
    page_size: int
    total_pages: int
