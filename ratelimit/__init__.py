"""
Rate limiting package for CaptionMe.

Holds the Redis-backed sliding-window limiter and the FastAPI dependency that
applies it per authenticated identity. Counters live in Redis so every API
process shares one view of each identity's window.
"""

from ratelimit.limiter import RateLimitDecision, SlidingWindowLimiter

__all__ = ["RateLimitDecision", "SlidingWindowLimiter"]
