from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "invalid_session",
    "invalid_code",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "configuration_missing",
    "two_factor_delivery_failed",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    cleaned = "".join(c for c in value.strip() if c not in _ZERO_WIDTH)
    normalized = unicodedata.normalize("NFKC", cleaned).lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(_EmailRequest):
    password: str = Field(..., min_length=1, max_length=128)


class RegisterRequest(_EmailRequest):
    password: str = Field(..., min_length=1, max_length=128)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class VerifyTwoFactorRequest(_EmailRequest):
    step_up_token: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=12)
    channel: str = Field(default="Email", max_length=32)


class ResendTwoFactorRequest(_EmailRequest):
    step_up_token: str = Field(..., min_length=1, max_length=256)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=128)


class ConfirmEmailRequest(_EmailRequest):
    token: str = Field(..., min_length=1, max_length=256)


class ResendConfirmationRequest(_EmailRequest):
    pass


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class ForgotPasswordRequest(_EmailRequest):
    pass


class ResetPasswordRequest(_EmailRequest):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=128)
    confirm_password: str = Field(..., min_length=1, max_length=128)

    @model_validator(mode="after")
    def _passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("Password and confirmation password do not match.")
        return self


class AuthenticatorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)


class SessionResponse(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    requires_two_factor: bool = False
    channel: Optional[str] = None
    step_up_token: Optional[str] = None


class AuthenticatorSetupResponse(BaseModel):
    secret_key: str
    provisioning_uri: str
    manual_entry_key: str


class AuthenticatorStatusResponse(BaseModel):
    enabled: bool
    configured: bool
    two_factor_enabled: bool


class PageResponse(BaseModel):
    id: str
    name: str
    url: str
    display_order: int = 0
    description: Optional[str] = None
    api_endpoint: Optional[str] = None
    http_method: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
