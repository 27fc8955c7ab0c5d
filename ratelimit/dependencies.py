"""
ratelimit/dependencies.py -- FastAPI dependency that applies the sliding window.

Routes opt in with:
    @router.put("/video/presigned", dependencies=[Depends(rate_limit())])

The identity key is the authenticated user id, so one user cannot exhaust
another's quota by sharing an IP (NAT, office proxy). The limiter instance
comes from app.state.rate_limiter, built in the app lifespan.

Headers: X-RateLimit-Remaining and X-RateLimit-Reset are set on permitted
responses; a rejection raises RateLimited, which the app's error handler
renders as 429 with Retry-After.
"""

from __future__ import annotations

import math
import time

from fastapi import Depends, Request, Response

from auth.dependencies import get_current_user
from auth.models import User
from core.config import get_settings
from core.errors import RateLimited
from ratelimit.limiter import SlidingWindowLimiter


def rate_limit(window_ms: int | None = None, max_requests: int | None = None):
    """Build a dependency enforcing max_requests per window_ms per user.

    None falls back to RATE_LIMIT_WINDOW_MS / RATE_LIMIT_MAX_REQUESTS, read
    at request time so tests can adjust settings without rebuilding routes.
    """

    def _dependency(request: Request, response: Response, user: User = Depends(get_current_user)) -> None:
        settings = get_settings()
        window = window_ms or settings.rate_limit_window_ms
        limit = max_requests or settings.rate_limit_max_requests
        limiter: SlidingWindowLimiter = request.app.state.rate_limiter

        decision = limiter.allow(f"user:{user.id}", window, limit)
        if not decision.permitted:
            wait_ms = max(decision.reset_at - int(time.time() * 1000), 0)
            raise RateLimited(retry_after=max(math.ceil(wait_ms / 1000), 1), reset_at_ms=decision.reset_at)

        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(decision.reset_at)

    return _dependency
