"""
api/routes/v1/user.py -- Profile of the signed-in user.

Routes:
  GET    /api/v1/user/profile      -- current profile
  PUT    /api/v1/user/profile      -- update first / last name
  DELETE /api/v1/user/deactivate   -- deactivate the account

All routes require auth. Deactivation flips is_active and revokes every
refresh token in one transaction; outstanding access tokens fail on their
next use because get_current_user() re-reads the row.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import MessageResponse, ProfileUpdate, UserResponse
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import UserStore
from auth.tokens import clear_auth_cookies
from core.errors import NotFound, ValidationError

logger = logging.getLogger("captionme.api.user")

router = APIRouter()


def _user_json(user: User | None) -> JSONResponse:
    if user is None:
        raise NotFound("User not found.")
    return JSONResponse(content=UserResponse.from_user(user).model_dump(by_alias=True))


@router.get("/user/profile", response_model=UserResponse)
def get_profile(current_user: User = Depends(get_current_user)) -> JSONResponse:
    return _user_json(current_user)


@router.put("/user/profile", response_model=UserResponse)
def update_profile(
    request: Request,
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Update name fields. Omitted fields keep their current value."""
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise ValidationError("No fields to update.", code="no_changes")

    user_store: UserStore = request.app.state.user_store
    user_store.update_user(current_user.id, **updates)
    return _user_json(user_store.get_by_id(current_user.id))


@router.delete("/user/deactivate", response_model=MessageResponse)
def deactivate(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    request.app.state.user_store.deactivate_user(current_user.id)
    logger.info("Deactivated user_id=%s", current_user.id)
    resp = JSONResponse(content=MessageResponse(message="Account deactivated successfully.").model_dump())
    clear_auth_cookies(resp)
    return resp
