"""
API request and response models for CaptionMe REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request bodies use camelCase aliases (newPassword, currentPassword, ...) to
match the field names the frontend already sends; populate_by_name keeps the
snake_case names usable from Python.
"""

from __future__ import annotations

import re
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from auth.models import TokenPair, User, normalize_email

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_HAS_LETTER = re.compile(r"[A-Za-z]")
_HAS_DIGIT = re.compile(r"\d")


def _check_password_strength(value: str) -> str:
    if not _HAS_LETTER.search(value) or not _HAS_DIGIT.search(value):
        raise ValueError("Password must contain at least one letter and one digit.")
    return value


class _Request(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)


class _Response(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


# 8-128 characters with at least one letter and one digit. Passwords are never
# stripped: leading/trailing spaces are legal characters.
Password = Annotated[str, Field(min_length=8, max_length=128), AfterValidator(_check_password_strength)]


class EmailRequest(_Request):
    """Any body whose only required field is an email (waitlist, forgot-password)."""

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def lower_email(cls, value):
        return normalize_email(value) if isinstance(value, str) else value


class RegisterRequest(EmailRequest):
    model_config = ConfigDict(str_strip_whitespace=False, populate_by_name=True)

    password: Password
    first_name: Optional[str] = Field(default=None, max_length=100, alias="firstName")
    last_name: Optional[str] = Field(default=None, max_length=100, alias="lastName")


class LoginRequest(EmailRequest):
    model_config = ConfigDict(str_strip_whitespace=False, populate_by_name=True)

    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(_Request):
    # Optional: browsers send the refreshToken cookie instead.
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class TokenRequest(_Request):
    token: str = Field(min_length=1, max_length=256)


class ResetPasswordRequest(TokenRequest):
    model_config = ConfigDict(str_strip_whitespace=False, populate_by_name=True)

    new_password: Password = Field(alias="newPassword")


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(min_length=1, max_length=128, alias="currentPassword")
    new_password: Password = Field(alias="newPassword")


class ProfileUpdate(_Request):
    first_name: Optional[str] = Field(default=None, max_length=100, alias="firstName")
    last_name: Optional[str] = Field(default=None, max_length=100, alias="lastName")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(_Response):
    id: int
    email: str
    role: str
    provider: str
    first_name: Optional[str] = Field(default=None, serialization_alias="firstName")
    last_name: Optional[str] = Field(default=None, serialization_alias="lastName")
    is_email_verified: bool = Field(serialization_alias="isEmailVerified")
    created_at: Optional[str] = Field(default=None, serialization_alias="createdAt")

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Factory Method -- the domain-to-wire mapping lives beside the wire model."""
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            provider=user.auth_provider,
            first_name=user.first_name,
            last_name=user.last_name,
            is_email_verified=user.is_email_verified,
            created_at=user.created_at,
        )


class TokensResponse(_Response):
    access_token: str = Field(serialization_alias="accessToken")
    refresh_token: str = Field(serialization_alias="refreshToken")
    token_type: str = Field(default="bearer", serialization_alias="tokenType")
    expires_in: int = Field(serialization_alias="expiresIn")

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokensResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.access_expires_in,
        )


class AuthResponse(_Response):
    """Body of register / login / refresh."""

    message: str
    user: UserResponse
    tokens: TokensResponse


class MessageResponse(_Response):
    message: str


class OAuthProviderInfo(_Response):
    name: str
    label: str


class PresignedUrlResponse(_Response):
    url: str
    file_name: str = Field(serialization_alias="fileName")
    expires_in: int = Field(serialization_alias="expiresIn")


class TranscriptionResponse(_Response):
    status: str
    transcription: Optional[dict] = None


class WaitlistResponse(_Response):
    message: str
    email: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    timestamp: str
    uptime_seconds: float
    memory_rss_kb: int
    components: dict[str, str]
