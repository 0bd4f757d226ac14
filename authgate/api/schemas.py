from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, Field, field_validator

from authgate.service.validation import MAX_PASSWORD_LENGTH, validate_email

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "session_not_found",
    "token_invalid",
    "token_expired",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
    "timeout",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Format and length rules that depend on settings are applied by the gateway
Password = Annotated[str, Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)]


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    password: Password


class ProviderLoginRequest(BaseModel):
    assertion: str = Field(..., min_length=1, max_length=8192)


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: Password
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    username: Optional[str] = Field(default=None, max_length=64)


class ForgotPasswordRequest(BaseModel):
    identifier: str = Field(
        ..., min_length=1, max_length=254, validation_alias=AliasChoices("identifier", "email")
    )


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=1024)
    new_password: Password
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    """Current password is required unless the account has none yet."""

    current_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    new_password: Password
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class ChangeEmailRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return validate_email(value)


class UserResponse(BaseModel):
    id: str
    email: str
    username: Optional[str] = None
    email_confirmed: bool = False
    login_methods: List[str] = Field(default_factory=list)


class SessionResponse(BaseModel):
    """A session as handed to its bearer; the only response that carries the token."""

    token: str
    token_type: str = "bearer"
    user: UserResponse
    method: str
    expires_at: datetime


class RegisterResponse(BaseModel):
    user: UserResponse
    session: Optional[SessionResponse] = None
    confirmation_sent: bool = False


class SessionInfoResponse(BaseModel):
    user_id: str
    email: str
    username: Optional[str] = None
    email_confirmed: bool
    method: str
    created_at: datetime
    refreshed_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    login_methods: List[str] = Field(default_factory=list)


class RevokedResponse(BaseModel):
    revoked: int


class EmailChangeResponse(BaseModel):
    outcome: str
    email: str


class AvailabilityResponse(BaseModel):
    available: bool = True
