from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "FEDERATED_ACCOUNT",
    "OAUTH_FAILED",
    "UNAUTHORIZED",
    "INVALID_CREDENTIALS",
    "EXPIRED",
    "NO_REFRESH_TOKEN",
    "INVALID_REFRESH_TOKEN",
    "FORBIDDEN",
    "INVALID_SIGNATURE",
    "SESSION_REVOKED",
    "NOT_FOUND",
    "CONFLICT",
    "RATE_LIMITED",
    "SERVER_ERROR",
})

MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is stable and machine-readable."""

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


def _strip_invisible(value: str) -> str:
    # Zero-width and bidi override characters
    invisible = {"\u200b", "\u200c", "\u200d", "\ufeff"}
    invisible.update(chr(c) for c in range(0x202A, 0x202F))
    invisible.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in invisible)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _strip_invisible(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    name: str = Field(..., max_length=128)
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        cleaned = _strip_invisible(value).strip()
        if not cleaned:
            raise ValueError("name must not be empty")
        return cleaned

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LogoutRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _normalize_logout_email(cls, value: str) -> str:
        return _strip_invisible(value.strip().lower())


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password(value)


class AccountResponse(BaseModel):
    id: str
    email: str
    name: str
    provider: Optional[str] = None
    is_premium: bool = False
    created_at: datetime
    updated_at: datetime


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: AccountResponse
