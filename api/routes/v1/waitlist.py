"""
api/routes/v1/waitlist.py -- Pre-launch waitlist signup (public).

  POST /api/v1/waitlist   -- 201 added; 400 bad email; 409 already listed
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from api.models import EmailRequest, WaitlistResponse
from waitlist.store import WaitlistStore

router = APIRouter()


@router.post("/waitlist", response_model=WaitlistResponse, status_code=201)
def join_waitlist(request: Request, body: EmailRequest) -> WaitlistResponse:
    store: WaitlistStore = request.app.state.waitlist_store
    entry = store.add(body.email)
    return WaitlistResponse(message="You've been added to the waitlist.", email=entry.email)
