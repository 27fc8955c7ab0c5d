"""
ratelimit/limiter.py -- Redis sliding-window rate limiter.

Each identity owns one sorted set. Members are "<ms>-<random hex>" and scores
are the request time in epoch milliseconds; the random suffix keeps two
requests in the same millisecond from collapsing into one member.

Algorithm (per allow() call):
  1. WATCH the key, then read: ZCOUNT of scores in [now - window, +inf) and
     the oldest surviving score.
  2. count >= max_requests -> reject. Nothing is written, so a client
     hammering a closed window does not extend its own lockout.
  3. Otherwise MULTI: trim scores < now - window, ZADD the new member,
     PEXPIRE the key to the window length, EXEC.

Atomicity: the read in step 1 and the write in step 3 form one optimistic
transaction. If another caller touches the key between WATCH and EXEC, Redis
aborts the EXEC (WatchError) and redis-py's transaction() re-runs the whole
function. Two concurrent requests can therefore never both observe the last
free slot and both be admitted.

Failure policy: fail-open. Any RedisError is logged as a warning and the
request is permitted with degraded=True. Blocking all uploads because the
cache is down is worse than briefly losing the limit.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("captionme.ratelimit")

_DEFAULT_PREFIX = "ratelimit:"


@dataclass(frozen=True)
class RateLimitDecision:
    permitted: bool
    remaining: int
    reset_at: int  # epoch milliseconds when the oldest counted request leaves the window
    degraded: bool = False


class SlidingWindowLimiter:
    """Per-identity sliding-window limiter over a shared Redis.

    Usage:
        limiter = SlidingWindowLimiter(redis.Redis.from_url(url))
        decision = limiter.allow("user:42", window_ms=10_000, max_requests=10)
        if not decision.permitted: ...

    clock returns epoch seconds as a float; tests inject a fixed clock.
    """

    def __init__(
        self,
        client: Redis,
        prefix: str = _DEFAULT_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = clock

    def allow(self, identity_key: str, window_ms: int, max_requests: int) -> RateLimitDecision:
        if window_ms <= 0 or max_requests <= 0:
            raise ValueError("window_ms and max_requests must be positive")

        key = f"{self._prefix}{identity_key}"
        now_ms = int(self._clock() * 1000)
        cutoff = now_ms - window_ms

        def _attempt(pipe) -> RateLimitDecision:
            # Immediate mode: these reads run right away under WATCH.
            count = pipe.zcount(key, cutoff, "+inf")
            oldest = pipe.zrangebyscore(key, cutoff, "+inf", start=0, num=1, withscores=True)
            oldest_ms = int(oldest[0][1]) if oldest else now_ms

            if count >= max_requests:
                return RateLimitDecision(permitted=False, remaining=0, reset_at=oldest_ms + window_ms)

            pipe.multi()
            pipe.zremrangebyscore(key, "-inf", f"({cutoff}")
            pipe.zadd(key, {f"{now_ms}-{secrets.token_hex(4)}": now_ms})
            pipe.pexpire(key, window_ms)
            return RateLimitDecision(
                permitted=True,
                remaining=max_requests - count - 1,
                reset_at=oldest_ms + window_ms,
            )

        try:
            return self._client.transaction(_attempt, key, value_from_callable=True)
        except RedisError:
            logger.warning("Rate limit store unavailable for %s -- failing open", identity_key, exc_info=True)
            return RateLimitDecision(
                permitted=True,
                remaining=max_requests,
                reset_at=now_ms + window_ms,
                degraded=True,
            )

    def close(self) -> None:
        self._client.close()
