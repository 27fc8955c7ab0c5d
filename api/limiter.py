"""
api/limiter.py -- Shared slowapi limiter for password login.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/auth.py (to apply @limiter.limit() on POST /auth/login).

One shared instance means every route sees the same counter store. Keyed by
client IP because the caller is not authenticated yet. Authenticated routes
use the Redis sliding window in ratelimit/ instead.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
