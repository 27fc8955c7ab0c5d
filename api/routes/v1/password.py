"""
api/routes/v1/password.py -- Password reset and change.

Routes:
  POST /api/v1/password/forgot-password   -- issue a reset token (public)
  POST /api/v1/password/reset-password    -- spend a reset token (public)
  POST /api/v1/password/change-password   -- change with current password (requires auth)

forgot-password answers with the same 200 body whether or not the email is
registered, so it cannot be used to enumerate accounts. Issuing a new reset
token deletes any earlier one for that user.

reset-password is single use: the token is marked used, the password set and
every refresh token revoked in one transaction (UserStore), so a stolen
session does not survive the reset.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request

from api.models import ChangePasswordRequest, EmailRequest, MessageResponse, ResetPasswordRequest
from auth.dependencies import get_current_user
from auth.models import OneTimeToken, User
from auth.store import UserStore
from auth.tokens import generate_one_time_token, hash_password, hash_token, verify_password
from core.config import get_settings
from core.errors import ValidationError

logger = logging.getLogger("captionme.api.password")

router = APIRouter()

_FORGOT_MESSAGE = "If an account with that email exists, a password reset link has been sent."


@router.post("/password/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    settings = get_settings()
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_email(body.email)
    if user is None or not user.is_active:
        return MessageResponse(message=_FORGOT_MESSAGE)

    raw = generate_one_time_token()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.password_reset_expire_seconds)
    user_store.replace_password_reset_token(OneTimeToken(user_id=user.id, token_hash=hash_token(raw), expires_at=expires_at))
    # No mail transport yet; surface the token only on a dev box.
    if settings.debug:
        logger.info("Password reset token for user_id=%s: %s", user.id, raw)
    return MessageResponse(message=_FORGOT_MESSAGE)


@router.post("/password/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    user_store: UserStore = request.app.state.user_store
    record = user_store.get_password_reset_token(hash_token(body.token))
    if record is None or record.used or record.is_expired(datetime.now(timezone.utc)):
        raise ValidationError("Invalid or expired reset token.", code="invalid_reset_token")

    if not user_store.consume_password_reset_token(record.id, record.user_id, hash_password(body.new_password)):
        raise ValidationError("Invalid or expired reset token.", code="invalid_reset_token")

    logger.info("Password reset for user_id=%s; sessions revoked", record.user_id)
    return MessageResponse(message="Password reset successfully.")


@router.post("/password/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Change the password of a signed-in local account.

    OAuth-only accounts have no current password to check; they set one
    through forgot-password instead.
    """
    if current_user.hashed_password is None:
        raise ValidationError("This account has no password. Use forgot-password to set one.", code="no_password")
    if not verify_password(body.current_password, current_user.hashed_password):
        raise ValidationError("Current password is incorrect.", code="wrong_password")

    request.app.state.user_store.update_user(current_user.id, hashed_password=hash_password(body.new_password))
    logger.info("Password changed for user_id=%s", current_user.id)
    return MessageResponse(message="Password changed successfully.")
