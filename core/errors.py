"""
core/errors.py -- Application exception taxonomy.

Every error a route can surface to a client is one of these classes. Each
carries the HTTP status, a stable machine-readable code, and a client-safe
message. api/main.py registers one handler for AppError that renders the
standard {"error": {...}} envelope, so route and service code raise instead
of building responses.

Internal detail (driver messages, botocore payloads) never goes into
`message`. UpstreamError keeps the original exception on __cause__ for the
log line only.

Layer rule: core/ is the kernel. No imports from other project packages.
"""

from __future__ import annotations


class AppError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"
    message = "Request validation failed."


# ---------------------------------------------------------------------------
# Authentication failures (401)
# ---------------------------------------------------------------------------


class AuthError(AppError):
    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class InvalidCredentials(AuthError):
    code = "bad_credentials"
    message = "Invalid email or password."


class InvalidToken(AuthError):
    code = "invalid_token"
    message = "Invalid token."


class ExpiredToken(AuthError):
    code = "token_expired"
    message = "Token has expired."


class WrongKind(AuthError):
    code = "wrong_token_kind"
    message = "Token is not valid for this use."


class AccountInactive(AuthError):
    code = "account_inactive"
    message = "Account not found or deactivated."


class TokenNotFound(AuthError):
    code = "refresh_token_not_found"
    message = "Invalid refresh token."


class TokenRevoked(AuthError):
    code = "refresh_token_revoked"
    message = "Refresh token has been revoked."


class TokenExpired(AuthError):
    code = "refresh_token_expired"
    message = "Refresh token has expired."


# ---------------------------------------------------------------------------
# Other client errors
# ---------------------------------------------------------------------------


class Forbidden(AppError):
    status_code = 403
    code = "forbidden"
    message = "Access denied."


class NotFound(AppError):
    status_code = 404
    code = "not_found"
    message = "Resource not found."


class Conflict(AppError):
    status_code = 409
    code = "conflict"
    message = "Resource already exists."


class RateLimited(AppError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests."

    def __init__(self, retry_after: int, reset_at_ms: int) -> None:
        super().__init__()
        self.retry_after = retry_after
        self.reset_at_ms = reset_at_ms


# ---------------------------------------------------------------------------
# Server-side failures
# ---------------------------------------------------------------------------


class UpstreamError(AppError):
    status_code = 500
    code = "upstream_error"
    message = "A backing service failed. Please retry later."
